from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from nas_webapp.bundles import BundleOrchestrator
from nas_webapp.driver import ContainerDriver, ContainerSpec, ContainerState, DriverError, DriverTimeoutError
from nas_webapp.locks import AppLockManager
from nas_webapp.models import (
    ACTION_BUNDLE_INSTALL,
    ACTION_INSTALL,
    ACTION_RESTART,
    ACTION_START,
    ACTION_STOP,
    ACTION_UNINSTALL,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    AppTask,
)
from nas_webapp.progress import ActionFailed, ProgressScope
from nas_webapp.registry import AppDefinition, AppRegistry
from nas_webapp.task_store import TaskStore

logger = logging.getLogger("nas_webapp.executor")

T = TypeVar("T")


class ActionExecutor:
    """Carries out one task's action against the container runtime.

    Install checkpoints: pull started 10, pull complete 50, container created
    70, container started 100. Uninstall checkpoints: stopped 30, removed 60,
    data removed 90, done 100. Start, stop and restart are a single call that
    jumps to 100.

    Every driver call runs on its own daemon thread and is abandoned once its
    deadline passes; the task then fails with a timeout error. A hung call
    never delays calls for other apps. An abandoned call keeps running in the
    background and may still change the container after the task failed and
    its app lock was released.

    :meth:`execute` always leaves the task terminal and never raises for
    execution errors. With a lock manager attached, the terminal transition
    and the release of the task's app locks happen as one step.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        registry: AppRegistry,
        driver: ContainerDriver,
        locks: AppLockManager | None = None,
        driver_timeout_seconds: float = 120.0,
        pull_timeout_seconds: float = 1800.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.driver = driver
        self.locks = locks
        self.driver_timeout_seconds = driver_timeout_seconds
        self.pull_timeout_seconds = pull_timeout_seconds
        self.bundles = BundleOrchestrator(registry=registry, install_member=self._install_bundle_member)

    def execute(self, task: AppTask) -> AppTask:
        scope = ProgressScope(self.store, task.id)
        try:
            summary = self._dispatch(task, scope)
        except ActionFailed as exc:
            return self._fail(task, detail=exc.detail, message=exc.message)
        except DriverError as exc:
            return self._fail(task, detail=str(exc), message=f"{task.action} failed")
        except Exception as exc:
            logger.exception("task crashed task_id=%s action=%s", task.id, task.action)
            return self._fail(task, detail=f"unexpected error: {exc}", message=f"{task.action} failed")
        scope.log(f"Task #{task.id} succeeded: {summary}")
        return self.finish(task, lambda: self.store.transition(task.id, STATUS_SUCCEEDED, summary))

    def finish(self, task: AppTask, transition: Callable[[], AppTask]) -> AppTask:
        if self.locks is None:
            return transition()
        return self.locks.finish(task.locked_app_ids, task.id, transition)

    def inspect(self, name: str) -> ContainerState:
        return self._call("inspect", self.driver.inspect, name)

    def _fail(self, task: AppTask, *, detail: str, message: str) -> AppTask:
        self.store.append_log(task.id, f"ERROR: {detail}")
        logger.info("task failed task_id=%s app_id=%s error=%s", task.id, task.app_id, detail)
        return self.finish(
            task,
            lambda: self.store.transition(task.id, STATUS_FAILED, message, error_detail=detail),
        )

    def _dispatch(self, task: AppTask, scope: ProgressScope) -> str:
        if task.action == ACTION_BUNDLE_INSTALL:
            return self.bundles.run(task, scope)

        app = self.registry.get_app(task.app_id)
        if task.action == ACTION_INSTALL:
            self.install(app, scope)
            return f"{app.name} installed"
        if task.action == ACTION_START:
            self._single_call(app, scope, "start", self.driver.start_container, "started")
            return f"{app.name} started"
        if task.action == ACTION_STOP:
            self._single_call(app, scope, "stop", self.driver.stop_container, "stopped")
            return f"{app.name} stopped"
        if task.action == ACTION_RESTART:
            self._single_call(app, scope, "restart", self.driver.restart_container, "restarted")
            return f"{app.name} restarted"
        if task.action == ACTION_UNINSTALL:
            remove_data = bool(task.options.get("remove_data", False))
            self.uninstall(app, scope, remove_data=remove_data)
            return f"{app.name} uninstalled"
        raise ActionFailed(f"unsupported action: {task.action}")

    def install(self, app: AppDefinition, scope: ProgressScope) -> None:
        name = app.container_name
        state = self.inspect(name)
        if state.installed:
            raise ActionFailed(f"container {name} already exists")

        scope.checkpoint(10, f"Pulling image {app.image}")
        self._call("pull", self.driver.pull_image, app.image, timeout=self.pull_timeout_seconds)
        scope.checkpoint(50, f"Image {app.image} pulled")
        self._call("create", self.driver.create_container, ContainerSpec.from_app(app))
        scope.checkpoint(70, f"Container {name} created")
        self._call("start", self.driver.start_container, name)
        scope.checkpoint(100, f"Container {name} started")

    def uninstall(self, app: AppDefinition, scope: ProgressScope, *, remove_data: bool) -> None:
        name = app.container_name
        state = self.inspect(name)
        if not state.installed:
            scope.log(f"Container {name} is not installed")
        else:
            if state.running:
                scope.log(f"Stopping container {name}")
                self._call("stop", self.driver.stop_container, name)
                scope.checkpoint(30, f"Container {name} stopped")
            self._call("remove", self.driver.remove_container, name, remove_volumes=remove_data)
            scope.checkpoint(60, f"Container {name} removed")

        if remove_data:
            self._remove_data_dir(app, scope)
        else:
            scope.log("Keeping app data")
        scope.checkpoint(100, f"{app.name} uninstalled")

    def _install_bundle_member(self, app: AppDefinition, scope: ProgressScope) -> None:
        state = self.inspect(app.container_name)
        if state.installed:
            scope.checkpoint(100, f"{app.name} already installed, skipping")
            return
        self.install(app, scope)

    def _single_call(
        self,
        app: AppDefinition,
        scope: ProgressScope,
        operation: str,
        call: Callable[[str], None],
        outcome: str,
    ) -> None:
        name = app.container_name
        scope.log(f"Running {operation} on container {name}")
        self._call(operation, call, name)
        scope.checkpoint(100, f"Container {name} {outcome}")

    def _remove_data_dir(self, app: AppDefinition, scope: ProgressScope) -> None:
        data_dir = app.data_dir
        if data_dir is None or not data_dir.exists():
            scope.checkpoint(90, "No app data directory to remove")
            return
        try:
            shutil.rmtree(data_dir)
        except OSError as exc:
            raise ActionFailed(f"failed to remove data directory {data_dir}: {exc}") from exc
        scope.checkpoint(90, f"Data directory {data_dir} removed")

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        deadline = timeout if timeout is not None else self.driver_timeout_seconds
        future: Future[T] = Future()

        def _run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=_run, name=f"nas-driver-{operation}", daemon=True).start()
        try:
            return future.result(timeout=deadline)
        except FutureTimeoutError as exc:
            logger.warning("driver call abandoned operation=%s after %ss", operation, deadline)
            raise DriverTimeoutError(f"timed out after {deadline:g}s: {operation}") from exc
