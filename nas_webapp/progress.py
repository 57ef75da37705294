from __future__ import annotations

from nas_webapp.task_store import TaskStore


class ActionFailed(RuntimeError):
    """An action stopped on an unexpected runtime state or a failed member."""

    def __init__(self, detail: str, *, message: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.message = message or detail


class ProgressScope:
    """Narrates one task's checkpoints onto a slice of its progress bar.

    A plain action owns the whole ``0..100`` range; a bundle hands each member
    install a child scope covering its share, so member checkpoints land inside
    that share.
    """

    def __init__(self, store: TaskStore, task_id: int, *, start: int = 0, span: int = 100) -> None:
        self.store = store
        self.task_id = task_id
        self.start = start
        self.span = span

    def checkpoint(self, local_progress: int, line: str) -> None:
        self.store.append_log(self.task_id, line)
        self.store.set_progress(self.task_id, self.start + self.span * local_progress // 100)
        self.store.set_message(self.task_id, line)

    def log(self, line: str) -> None:
        self.store.append_log(self.task_id, line)

    def status(self, message: str) -> None:
        self.store.set_message(self.task_id, message)

    def child(self, index: int, count: int) -> ProgressScope:
        begin = self.start + self.span * index // count
        end = self.start + self.span * (index + 1) // count
        return ProgressScope(self.store, self.task_id, start=begin, span=end - begin)
