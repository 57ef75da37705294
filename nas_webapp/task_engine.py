from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from nas_webapp.driver import DriverError
from nas_webapp.errors import AppBusyError
from nas_webapp.executor import ActionExecutor
from nas_webapp.locks import AppLockManager
from nas_webapp.models import (
    ACTION_BUNDLE_INSTALL,
    ACTION_UNINSTALL,
    APP_ACTIONS,
    AppTask,
    bundle_app_id,
)
from nas_webapp.observability import MetricsCollector
from nas_webapp.registry import AppRegistry
from nas_webapp.retry import RetryCoordinator
from nas_webapp.task_store import TaskStore
from nas_webapp.worker_pool import WorkerPool

logger = logging.getLogger("nas_webapp.engine")

ABANDONED_REASON = "abandoned: control panel restarted before the task finished"


class TaskEngine:
    """Admission path for every user request that changes an app.

    Requests are validated against the catalog, admitted through the lock
    manager (which creates the task row) and handed to the worker pool. All
    admission errors are raised before a task exists.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        locks: AppLockManager,
        registry: AppRegistry,
        executor: ActionExecutor,
        pool: WorkerPool,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.registry = registry
        self.executor = executor
        self.pool = pool
        self.metrics = metrics
        self.retries = RetryCoordinator(store=store, locks=locks, submit=pool.submit)

    def start(self) -> list[int]:
        recovered = self.store.recover_abandoned(ABANDONED_REASON)
        self.pool.start()
        return recovered

    def stop(self) -> None:
        self.pool.stop()

    def submit_action(self, app_id: str, action: str, *, remove_data: bool = False) -> AppTask:
        if action not in APP_ACTIONS:
            raise ValueError(f"unsupported action: {action}")
        self.registry.get_app(app_id)
        options = {"remove_data": bool(remove_data)} if action == ACTION_UNINSTALL else None
        task = self._admit([app_id], lambda: self.store.create(app_id, action, options=options))
        self.pool.submit(task.id)
        return task

    def install_bundle(self, bundle_id: str) -> AppTask:
        bundle = self.registry.get_bundle(bundle_id)
        task = self._admit(
            bundle.app_ids,
            lambda: self.store.create(
                bundle_app_id(bundle.id),
                ACTION_BUNDLE_INSTALL,
                member_app_ids=list(bundle.app_ids),
            ),
        )
        self.pool.submit(task.id)
        return task

    def retry(self, task_id: int) -> AppTask:
        try:
            task = self.retries.retry(task_id)
        except AppBusyError:
            self._count("tasks_rejected_busy")
            raise
        self._admitted(task)
        self._count("tasks_retried")
        return task

    def get_task(self, task_id: int) -> AppTask:
        return self.store.get(task_id)

    def list_tasks(
        self,
        *,
        limit: int = 80,
        status: str | None = None,
        app_id: str | None = None,
        since: str | None = None,
    ) -> list[AppTask]:
        return self.store.list(limit=limit, status=status, app_id=app_id, since=since)

    def lineage(self, task_id: int) -> list[AppTask]:
        return self.retries.lineage(task_id)

    def app_overview(self) -> list[dict[str, Any]]:
        """Catalog entries merged with runtime state and the in-flight task, if any."""
        items: list[dict[str, Any]] = []
        for app in self.registry.list_apps():
            health_error: str | None = None
            try:
                state = self.executor.inspect(app.container_name)
                installed, running, health = state.installed, state.running, state.health
                health_error = state.error
            except DriverError as exc:
                installed, running, health = False, False, "unknown"
                health_error = str(exc)
            items.append(
                {
                    "id": app.id,
                    "name": app.name,
                    "description": app.description,
                    "category": app.category,
                    "container_name": app.container_name,
                    "image": app.image,
                    "open_port_key": app.open_port_key,
                    "installed": installed,
                    "running": running,
                    "health": health,
                    "health_error": health_error,
                    "active_task_id": self.locks.holder(app.id),
                }
            )
        return items

    def _admit(self, app_ids: list[str], create: Callable[[], AppTask]) -> AppTask:
        try:
            task = self.locks.admit(app_ids, create, task_id=lambda created: created.id)
        except AppBusyError:
            self._count("tasks_rejected_busy")
            raise
        self._admitted(task)
        return task

    def _admitted(self, task: AppTask) -> None:
        if self.metrics is not None:
            self.metrics.record_task_admitted(task.action)

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.record_count(name)
