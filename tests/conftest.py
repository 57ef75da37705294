"""Pytest fixtures for nas_webapp tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from nas_webapp.db import build_engine, init_db
from nas_webapp.driver import ContainerSpec, ContainerState, DriverError
from nas_webapp.executor import ActionExecutor
from nas_webapp.locks import AppLockManager
from nas_webapp.models import AppTask
from nas_webapp.observability import MetricsCollector
from nas_webapp.registry import AppRegistry, load_registry
from nas_webapp.settings import Settings
from nas_webapp.task_engine import TaskEngine
from nas_webapp.task_store import TaskStore
from nas_webapp.worker_pool import WorkerPool


class FakeDriver:
    """In-memory container runtime with failure injection and blocking gates."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.containers: dict[str, dict[str, object]] = {}
        self.pulled: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.removed_volumes: list[str] = []
        self._failures: dict[tuple[str, str], str] = {}
        self._gates: dict[tuple[str, str], threading.Event] = {}
        self._entered: dict[tuple[str, str], threading.Event] = {}

    def fail(self, operation: str, target: str, message: str) -> None:
        self._failures[(operation, target)] = message

    def gate(self, operation: str, target: str) -> threading.Event:
        """Block ``operation`` on ``target`` until the returned event is set."""
        release = threading.Event()
        self._gates[(operation, target)] = release
        self._entered[(operation, target)] = threading.Event()
        return release

    def wait_entered(self, operation: str, target: str, timeout: float = 5.0) -> bool:
        return self._entered[(operation, target)].wait(timeout)

    def preinstall(self, name: str, *, running: bool = True) -> None:
        self.containers[name] = {"running": running, "spec": None}

    def _enter(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls.append((operation, target))
        key = (operation, target)
        if key in self._entered:
            self._entered[key].set()
        gate = self._gates.get(key)
        if gate is not None:
            gate.wait(timeout=10)
        message = self._failures.get(key)
        if message is not None:
            raise DriverError(message)

    def _container(self, name: str) -> dict[str, object]:
        container = self.containers.get(name)
        if container is None:
            raise DriverError("container not found")
        return container

    def pull_image(self, ref: str) -> None:
        self._enter("pull", ref)
        self.pulled.append(ref)

    def create_container(self, spec: ContainerSpec) -> str:
        self._enter("create", spec.name)
        if spec.name in self.containers:
            raise DriverError(f"container name {spec.name} is already in use")
        self.containers[spec.name] = {"running": False, "spec": spec}
        return f"id-{spec.name}"

    def start_container(self, name: str) -> None:
        self._enter("start", name)
        self._container(name)["running"] = True

    def stop_container(self, name: str) -> None:
        self._enter("stop", name)
        self._container(name)["running"] = False

    def restart_container(self, name: str) -> None:
        self._enter("restart", name)
        self._container(name)["running"] = True

    def remove_container(self, name: str, *, remove_volumes: bool = False) -> None:
        self._enter("remove", name)
        self._container(name)
        del self.containers[name]
        if remove_volumes:
            self.removed_volumes.append(name)

    def inspect(self, name: str) -> ContainerState:
        self._enter("inspect", name)
        container = self.containers.get(name)
        if container is None:
            return ContainerState(installed=False, running=False, health="not_installed")
        running = bool(container["running"])
        return ContainerState(installed=True, running=running, health="running" if running else "stopped")


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def nas_settings(tmp_path: Path) -> Settings:
    return Settings(
        nas_data_root=tmp_path / "runtime" / "nas",
        nas_db_path=tmp_path / "runtime" / "nas" / "panel.sqlite3",
        nas_driver_timeout_seconds=5,
        nas_pull_timeout_seconds=5,
        media_path=tmp_path / "media",
        downloads_path=tmp_path / "downloads",
        docker_data_path=tmp_path / "docker",
    )


@pytest.fixture
def registry(nas_settings: Settings) -> AppRegistry:
    return load_registry(values=nas_settings.integration_values())


@pytest.fixture
def db_engine(nas_settings: Settings):
    engine = build_engine(nas_settings.nas_db_path)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine) -> TaskStore:
    return TaskStore(engine=db_engine)


@pytest.fixture
def locks() -> AppLockManager:
    return AppLockManager()


@pytest.fixture
def executor(
    store: TaskStore, registry: AppRegistry, fake_driver: FakeDriver, locks: AppLockManager
) -> ActionExecutor:
    return ActionExecutor(
        store=store,
        registry=registry,
        driver=fake_driver,
        locks=locks,
        driver_timeout_seconds=5,
        pull_timeout_seconds=5,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def task_engine(
    store: TaskStore,
    locks: AppLockManager,
    registry: AppRegistry,
    executor: ActionExecutor,
    metrics: MetricsCollector,
) -> Iterator[TaskEngine]:
    pool = WorkerPool(store=store, locks=locks, executor=executor, slots=4, metrics=metrics)
    engine = TaskEngine(
        store=store,
        locks=locks,
        registry=registry,
        executor=executor,
        pool=pool,
        metrics=metrics,
    )
    engine.start()
    yield engine
    engine.stop()


@pytest.fixture
def wait_terminal(store: TaskStore) -> Callable[..., AppTask]:
    def _wait(task_id: int, timeout: float = 10.0) -> AppTask:
        deadline = time.monotonic() + timeout
        while True:
            task = store.get(task_id)
            if task.is_terminal:
                return task
            if time.monotonic() > deadline:
                raise AssertionError(f"task {task_id} still {task.status} after {timeout}s")
            time.sleep(0.02)

    return _wait
