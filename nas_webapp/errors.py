from __future__ import annotations


class TaskEngineError(Exception):
    pass


class AdmissionError(TaskEngineError):
    """Request rejected before any task was created."""


class AppBusyError(AdmissionError):
    def __init__(self, *, app_id: str, blocking_task_id: int) -> None:
        super().__init__(f"application busy: {app_id} (task #{blocking_task_id})")
        self.app_id = app_id
        self.blocking_task_id = blocking_task_id


class UnknownAppError(AdmissionError):
    def __init__(self, app_id: str) -> None:
        super().__init__(f"app not found: {app_id}")
        self.app_id = app_id


class UnknownBundleError(AdmissionError):
    def __init__(self, bundle_id: str) -> None:
        super().__init__(f"bundle not found: {bundle_id}")
        self.bundle_id = bundle_id


class TaskNotFoundError(AdmissionError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class RetryNotAllowedError(AdmissionError):
    def __init__(self, *, task_id: int, status: str) -> None:
        super().__init__(f"only failed tasks can be retried: task #{task_id} is {status}")
        self.task_id = task_id
        self.status = status


class InvalidTransitionError(TaskEngineError):
    def __init__(self, *, task_id: int, current: str | None, target: str) -> None:
        super().__init__(f"illegal transition for task #{task_id}: {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target
