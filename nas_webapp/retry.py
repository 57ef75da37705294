from __future__ import annotations

import logging
from collections.abc import Callable

from nas_webapp.errors import RetryNotAllowedError
from nas_webapp.locks import AppLockManager
from nas_webapp.models import STATUS_FAILED, AppTask
from nas_webapp.task_store import TaskStore

logger = logging.getLogger("nas_webapp.retry")


class RetryCoordinator:
    """Re-runs failed tasks as new tasks linked through ``retried_from``.

    The original task is never touched; the retry goes through the same lock
    admission as any other request, so a busy app rejects it.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        locks: AppLockManager,
        submit: Callable[[int], None],
    ) -> None:
        self.store = store
        self.locks = locks
        self.submit = submit

    def retry(self, original_task_id: int) -> AppTask:
        original = self.store.get(original_task_id)
        if original.status != STATUS_FAILED:
            raise RetryNotAllowedError(task_id=original.id, status=original.status)

        task = self.locks.admit(
            original.locked_app_ids,
            lambda: self.store.create(
                original.app_id,
                original.action,
                retried_from=original.id,
                member_app_ids=original.member_app_ids or None,
                options=original.options or None,
            ),
            task_id=lambda created: created.id,
        )
        self.store.append_log(task.id, f"Retry of task #{original.id}")
        logger.info("retry admitted task_id=%s retried_from=%s", task.id, original.id)
        self.submit(task.id)
        return task

    def lineage(self, task_id: int) -> list[AppTask]:
        """Chain from ``task_id`` back to the first attempt, newest first."""
        chain = [self.store.get(task_id)]
        while chain[-1].retried_from is not None:
            parent_id = chain[-1].retried_from
            if parent_id >= chain[-1].id:
                logger.error("broken retry chain task_id=%s retried_from=%s", chain[-1].id, parent_id)
                break
            chain.append(self.store.get(parent_id))
        return chain
