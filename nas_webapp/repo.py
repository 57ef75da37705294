from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from nas_webapp.models import ACTIVE_STATUSES, STATUS_QUEUED, STATUS_SUCCEEDED, AppTask


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_task(
    session: Session,
    *,
    app_id: str,
    action: str,
    retried_from: int | None = None,
    member_app_ids: list[str] | None = None,
    options: dict[str, Any] | None = None,
) -> AppTask:
    task = AppTask(
        app_id=app_id,
        action=action,
        status=STATUS_QUEUED,
        progress=0,
        message="queued",
        log_text="",
        retried_from=retried_from,
        member_app_ids_json=json.dumps(list(member_app_ids or [])),
        options_json=json.dumps(dict(options or {}), sort_keys=True),
    )
    session.add(task)
    session.flush()
    return task


def get_task(session: Session, task_id: int, *, refresh: bool = False) -> AppTask | None:
    return session.get(AppTask, task_id, populate_existing=refresh)


def list_tasks(
    session: Session,
    *,
    limit: int = 50,
    status: str | None = None,
    app_id: str | None = None,
    since: str | None = None,
) -> list[AppTask]:
    stmt = select(AppTask)
    if status is not None:
        stmt = stmt.where(AppTask.status == status)
    if app_id is not None:
        stmt = stmt.where(AppTask.app_id == app_id)
    if since is not None:
        stmt = stmt.where(AppTask.created_at >= since)
    stmt = stmt.order_by(AppTask.id.desc()).limit(limit)
    return list(session.scalars(stmt))


def list_tasks_by_status(session: Session, statuses: Iterable[str]) -> list[AppTask]:
    return list(
        session.scalars(
            select(AppTask)
            .where(AppTask.status.in_(tuple(statuses)))
            .order_by(AppTask.id.asc())
        )
    )


def append_task_log(session: Session, *, task_id: int, text: str) -> bool:
    result = session.execute(
        update(AppTask)
        .where(AppTask.id == task_id, AppTask.status.in_(tuple(ACTIVE_STATUSES)))
        .values(log_text=AppTask.log_text + text, updated_at=_now_iso())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0


def raise_task_progress(session: Session, *, task_id: int, progress: int) -> bool:
    result = session.execute(
        update(AppTask)
        .where(AppTask.id == task_id, AppTask.status.in_(tuple(ACTIVE_STATUSES)))
        .values(
            progress=case((AppTask.progress < progress, progress), else_=AppTask.progress),
            updated_at=_now_iso(),
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0


def set_task_message(session: Session, *, task_id: int, message: str) -> bool:
    result = session.execute(
        update(AppTask)
        .where(AppTask.id == task_id, AppTask.status.in_(tuple(ACTIVE_STATUSES)))
        .values(message=message, updated_at=_now_iso())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0


def transition_task_status(
    session: Session,
    *,
    task_id: int,
    allowed_statuses: Iterable[str],
    target_status: str,
    message: str,
    error_detail: str | None = None,
) -> bool:
    allowed = tuple(allowed_statuses)
    if not allowed:
        return False
    now = _now_iso()
    values: dict[str, Any] = {
        "status": target_status,
        "message": message,
        "error_detail": error_detail,
        "updated_at": now,
    }
    if target_status in ACTIVE_STATUSES:
        values["started_at"] = now
    else:
        values["finished_at"] = now
    if target_status == STATUS_SUCCEEDED:
        values["progress"] = 100
    result = session.execute(
        update(AppTask)
        .where(AppTask.id == task_id, AppTask.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0
