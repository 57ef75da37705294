from __future__ import annotations

import logging
import queue
import threading
import time

from nas_webapp.executor import ActionExecutor
from nas_webapp.locks import AppLockManager
from nas_webapp.models import STATUS_FAILED, STATUS_QUEUED, STATUS_RUNNING, AppTask
from nas_webapp.observability import MetricsCollector
from nas_webapp.task_store import TaskStore

logger = logging.getLogger("nas_webapp.worker")


class WorkerPool:
    """Fixed number of worker threads draining one FIFO queue of task ids.

    The pool does not know about apps; the lock manager alone keeps two tasks
    of one app from running at the same time. Locks go away together with the
    terminal transition; the release in :meth:`run_task` only matters when
    that transition itself could not be written.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        locks: AppLockManager,
        executor: ActionExecutor,
        slots: int = 4,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if slots < 1:
            raise ValueError("worker pool needs at least one slot")
        self.store = store
        self.locks = locks
        self.executor = executor
        self.slots = slots
        self.metrics = metrics
        self._queue: queue.Queue[int | None] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    def start(self) -> None:
        if self._threads:
            return
        for slot in range(self.slots):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"nas-worker-{slot}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("worker pool started slots=%s", self.slots)

    def stop(self, *, timeout: float = 5.0) -> None:
        threads, self._threads = self._threads, []
        for _ in threads:
            self._queue.put(None)
        for thread in threads:
            thread.join(timeout=timeout)
        logger.info("worker pool stopped")

    def submit(self, task_id: int) -> None:
        self._queue.put(task_id)

    def wait_idle(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stats(self) -> dict[str, int]:
        with self._busy_lock:
            busy = self._busy
        return {
            "slots": self.slots,
            "alive": sum(1 for thread in self._threads if thread.is_alive()),
            "busy": busy,
            "queued": self._queue.qsize(),
        }

    def _worker_loop(self) -> None:
        while True:
            task_id = self._queue.get()
            try:
                if task_id is None:
                    return
                with self._busy_lock:
                    self._busy += 1
                try:
                    self.run_task(task_id)
                except Exception:
                    logger.exception("worker dropped task_id=%s", task_id)
                finally:
                    with self._busy_lock:
                        self._busy -= 1
            finally:
                self._queue.task_done()

    def run_task(self, task_id: int) -> AppTask | None:
        task = self.store.get(task_id)
        if task.status != STATUS_QUEUED:
            logger.warning("skipping task_id=%s with status=%s", task_id, task.status)
            return task

        app_ids = task.locked_app_ids
        if not self.locks.holds(app_ids, task.id):
            acquired, blocking = self.locks.try_acquire_many(app_ids, task.id)
            if not acquired:
                detail = f"application busy: task #{blocking}"
                self.store.append_log(task.id, f"ERROR: {detail}")
                return self.store.transition(task.id, STATUS_FAILED, "application busy", error_detail=detail)

        started = time.perf_counter()
        try:
            task = self.store.transition(task.id, STATUS_RUNNING, "running")
            self.store.append_log(task.id, f"Task #{task.id} {task.action} {task.app_id} started")
            task = self.executor.execute(task)
        except Exception as exc:
            logger.exception("worker could not run task_id=%s", task_id)
            task = self._record_crash(task_id, exc)
        finally:
            self.locks.release_many(app_ids, task_id)

        if self.metrics is not None and task is not None:
            self.metrics.record_task_finished(task.action, task.status, time.perf_counter() - started)
        return task

    def _record_crash(self, task_id: int, exc: Exception) -> AppTask | None:
        try:
            current = self.store.get(task_id)
            if current.is_terminal:
                return current
            return self.executor.finish(
                current,
                lambda: self.store.transition(
                    task_id,
                    STATUS_FAILED,
                    "worker error",
                    error_detail=f"worker error: {exc}",
                ),
            )
        except Exception:
            logger.exception("could not record failure for task_id=%s", task_id)
            return None
