from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import TypeVar

from nas_webapp.errors import AppBusyError

logger = logging.getLogger("nas_webapp.locks")

T = TypeVar("T")


class AppLockManager:
    """Ownership map ``app_id -> task_id`` for apps with an in-flight task.

    At most one entry exists per app id. A single mutex guards the map; it is
    held only for dictionary operations, the task row insert inside
    :meth:`admit` and the terminal row update inside :meth:`finish`, never
    while an action executes.
    """

    def __init__(self) -> None:
        self._guard = threading.RLock()
        self._owners: dict[str, int] = {}

    def try_acquire(self, app_id: str, task_id: int) -> bool:
        with self._guard:
            if app_id in self._owners:
                return False
            self._owners[app_id] = task_id
            return True

    def try_acquire_many(self, app_ids: Iterable[str], task_id: int) -> tuple[bool, int | None]:
        """All-or-nothing acquisition; returns the first blocking task id on failure."""
        wanted = list(dict.fromkeys(app_ids))
        with self._guard:
            for app_id in wanted:
                holder = self._owners.get(app_id)
                if holder is not None:
                    return False, holder
            for app_id in wanted:
                self._owners[app_id] = task_id
            return True, None

    def admit(self, app_ids: Iterable[str], create: Callable[[], T], *, task_id: Callable[[T], int]) -> T:
        """Create a task and lock its apps as one atomic step.

        Raises :class:`AppBusyError` naming the holder when any app is locked;
        ``create`` is not called in that case. If ``create`` raises, no lock is
        taken.
        """
        wanted = list(dict.fromkeys(app_ids))
        with self._guard:
            for app_id in wanted:
                holder = self._owners.get(app_id)
                if holder is not None:
                    logger.info("admission rejected app_id=%s blocking_task_id=%s", app_id, holder)
                    raise AppBusyError(app_id=app_id, blocking_task_id=holder)
            created = create()
            acquired, _ = self.try_acquire_many(wanted, task_id(created))
            if not acquired:
                raise RuntimeError("lock map changed while admission guard was held")
            return created

    def release(self, app_id: str, task_id: int) -> bool:
        with self._guard:
            if self._owners.get(app_id) != task_id:
                logger.debug("stale release ignored app_id=%s task_id=%s", app_id, task_id)
                return False
            del self._owners[app_id]
            return True

    def release_many(self, app_ids: Iterable[str], task_id: int) -> int:
        released = 0
        with self._guard:
            for app_id in app_ids:
                if self.release(app_id, task_id):
                    released += 1
        return released

    def finish(self, app_ids: Iterable[str], task_id: int, transition: Callable[[], T]) -> T:
        """Run a task's terminal transition and drop its locks as one step.

        Admission waits on the same guard, so a request never finds an app
        held by a task that is already terminal. If ``transition`` raises, the
        locks stay with the task.
        """
        with self._guard:
            result = transition()
            self.release_many(app_ids, task_id)
            return result

    def holder(self, app_id: str) -> int | None:
        with self._guard:
            return self._owners.get(app_id)

    def holds(self, app_ids: Iterable[str], task_id: int) -> bool:
        with self._guard:
            return all(self._owners.get(app_id) == task_id for app_id in app_ids)

    def snapshot(self) -> dict[str, int]:
        with self._guard:
            return dict(self._owners)
