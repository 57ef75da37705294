from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.engine import Engine

from nas_webapp.db import session_scope
from nas_webapp.errors import InvalidTransitionError, TaskNotFoundError
from nas_webapp.models import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    STATUS_FAILED,
    TASK_ACTIONS,
    TERMINAL_STATUSES,
    AppTask,
)
from nas_webapp.repo import (
    append_task_log,
    create_task,
    get_task,
    list_tasks,
    list_tasks_by_status,
    raise_task_progress,
    set_task_message,
    transition_task_status,
)

logger = logging.getLogger("nas_webapp.tasks")

MAX_LIST_LIMIT = 500


def _log_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class TaskStore:
    """Durable record of every task and the only writer of task rows.

    Every mutation runs under a per-task lock and as a conditional UPDATE that
    only matches non-terminal rows, so log appends, progress updates and the
    terminal transition of one task never interleave inconsistently. Tasks of
    different apps never contend on the same lock.
    """

    def __init__(self, *, engine: Engine) -> None:
        self.engine = engine
        self._task_locks_guard = threading.Lock()
        self._task_locks: dict[int, threading.Lock] = {}

    def create(
        self,
        app_id: str,
        action: str,
        retried_from: int | None = None,
        *,
        member_app_ids: list[str] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AppTask:
        if action not in TASK_ACTIONS:
            raise ValueError(f"unsupported action: {action}")
        with session_scope(self.engine) as session:
            task = create_task(
                session,
                app_id=app_id,
                action=action,
                retried_from=retried_from,
                member_app_ids=member_app_ids,
                options=options,
            )
        logger.info(
            "task created id=%s app_id=%s action=%s retried_from=%s",
            task.id,
            app_id,
            action,
            retried_from,
        )
        return task

    def get(self, task_id: int) -> AppTask:
        with session_scope(self.engine) as session:
            task = get_task(session, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list(
        self,
        *,
        limit: int = 50,
        status: str | None = None,
        app_id: str | None = None,
        since: str | None = None,
    ) -> list[AppTask]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        with session_scope(self.engine) as session:
            return list_tasks(session, limit=limit, status=status, app_id=app_id, since=since)

    def list_active(self) -> list[AppTask]:
        with session_scope(self.engine) as session:
            return list_tasks_by_status(session, ACTIVE_STATUSES)

    def append_log(self, task_id: int, text: str) -> bool:
        line = f"[{_log_stamp()}] {text.rstrip()}\n"
        with self._task_lock(task_id):
            with session_scope(self.engine) as session:
                appended = append_task_log(session, task_id=task_id, text=line)
        if not appended:
            logger.warning("log append ignored task_id=%s (missing or terminal)", task_id)
        return appended

    def set_progress(self, task_id: int, value: int) -> bool:
        value = max(0, min(100, int(value)))
        with self._task_lock(task_id):
            with session_scope(self.engine) as session:
                updated = raise_task_progress(session, task_id=task_id, progress=value)
        if not updated:
            logger.warning("progress update ignored task_id=%s (missing or terminal)", task_id)
        return updated

    def set_message(self, task_id: int, message: str) -> bool:
        with self._task_lock(task_id):
            with session_scope(self.engine) as session:
                return set_task_message(session, task_id=task_id, message=message)

    def transition(
        self,
        task_id: int,
        new_status: str,
        message: str,
        error_detail: str | None = None,
    ) -> AppTask:
        allowed = ALLOWED_TRANSITIONS.get(new_status)
        if allowed is None:
            raise InvalidTransitionError(task_id=task_id, current=None, target=new_status)
        if new_status != STATUS_FAILED:
            error_detail = None

        with self._task_lock(task_id):
            with session_scope(self.engine) as session:
                moved = transition_task_status(
                    session,
                    task_id=task_id,
                    allowed_statuses=allowed,
                    target_status=new_status,
                    message=message,
                    error_detail=error_detail,
                )
                task = get_task(session, task_id, refresh=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            if not moved:
                raise InvalidTransitionError(task_id=task_id, current=task.status, target=new_status)

        if new_status in TERMINAL_STATUSES:
            with self._task_locks_guard:
                self._task_locks.pop(task_id, None)
        logger.info("task %s -> %s app_id=%s", task_id, new_status, task.app_id)
        return task

    def recover_abandoned(self, reason: str) -> list[int]:
        """Fail every task left queued or running by a previous process."""
        recovered: list[int] = []
        for task in self.list_active():
            self.append_log(task.id, f"ERROR: {reason}")
            try:
                self.transition(task.id, STATUS_FAILED, "abandoned", error_detail=reason)
            except InvalidTransitionError:
                continue
            recovered.append(task.id)
        if recovered:
            logger.warning("recovered abandoned tasks ids=%s", recovered)
        return recovered

    def _task_lock(self, task_id: int) -> threading.Lock:
        with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._task_locks[task_id] = lock
            return lock
