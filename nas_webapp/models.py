from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


ACTION_INSTALL = "install"
ACTION_START = "start"
ACTION_STOP = "stop"
ACTION_RESTART = "restart"
ACTION_UNINSTALL = "uninstall"
ACTION_BUNDLE_INSTALL = "bundle_install"

TASK_ACTIONS = frozenset(
    {
        ACTION_INSTALL,
        ACTION_START,
        ACTION_STOP,
        ACTION_RESTART,
        ACTION_UNINSTALL,
        ACTION_BUNDLE_INSTALL,
    }
)
APP_ACTIONS = TASK_ACTIONS - {ACTION_BUNDLE_INSTALL}

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

TASK_STATUSES = frozenset({STATUS_QUEUED, STATUS_RUNNING, STATUS_SUCCEEDED, STATUS_FAILED})
ACTIVE_STATUSES = frozenset({STATUS_QUEUED, STATUS_RUNNING})
TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, STATUS_FAILED})

# target status -> statuses it may be entered from.
# queued -> failed only happens when restart recovery abandons a task.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_RUNNING: frozenset({STATUS_QUEUED}),
    STATUS_SUCCEEDED: frozenset({STATUS_RUNNING}),
    STATUS_FAILED: frozenset({STATUS_QUEUED, STATUS_RUNNING}),
}

BUNDLE_APP_PREFIX = "bundle:"


def bundle_app_id(bundle_id: str) -> str:
    return f"{BUNDLE_APP_PREFIX}{bundle_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Base(DeclarativeBase):
    pass


class AppTask(Base):
    __tablename__ = "app_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_QUEUED, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    log_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    retried_from: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    member_app_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    options_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[str] = mapped_column(String(64), nullable=False, default=_now_iso)
    updated_at: Mapped[str] = mapped_column(String(64), nullable=False, default=_now_iso)
    started_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    finished_at: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @property
    def member_app_ids(self) -> list[str]:
        return list(json.loads(self.member_app_ids_json or "[]"))

    @property
    def options(self) -> dict[str, Any]:
        return dict(json.loads(self.options_json or "{}"))

    @property
    def locked_app_ids(self) -> list[str]:
        """App ids this task holds locks for while queued or running."""
        if self.action == ACTION_BUNDLE_INSTALL:
            return self.member_app_ids
        return [self.app_id]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
