from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from nas_webapp.db import ping
from nas_webapp.models import (
    ACTION_INSTALL,
    ACTION_RESTART,
    ACTION_START,
    ACTION_STOP,
    ACTION_UNINSTALL,
    TASK_STATUSES,
    AppTask,
)
from nas_webapp.observability import render_prometheus
from nas_webapp.task_engine import TaskEngine

router = APIRouter()
api_logger = logging.getLogger("nas_webapp.api")

_POST_ACTIONS = (ACTION_INSTALL, ACTION_START, ACTION_STOP, ACTION_RESTART)


def _engine(request: Request) -> TaskEngine:
    return request.app.state.task_engine


def task_payload(task: AppTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "app_id": task.app_id,
        "action": task.action,
        "status": task.status,
        "progress": task.progress,
        "message": task.message,
        "error_detail": task.error_detail,
        "retried_from": task.retried_from,
        "member_app_ids": task.member_app_ids,
        "options": task.options,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "started_at": task.started_at,
        "finished_at": task.finished_at,
    }


@router.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


def _database_dependency_status(request: Request) -> dict[str, str]:
    try:
        ping(request.app.state.engine)
        return {"status": "ok"}
    except Exception:
        api_logger.exception("database readiness probe failed")
        return {"status": "error"}


def _worker_dependency_status(request: Request) -> dict[str, object]:
    stats = _engine(request).pool.stats()
    status = "ok" if stats["alive"] == stats["slots"] else "degraded"
    return {"status": status, **stats}


@router.get("/health/ready")
def health_ready(request: Request) -> dict[str, object]:
    dependencies = {
        "database": _database_dependency_status(request),
        "workers": _worker_dependency_status(request),
    }
    status = (
        "ready"
        if all(dep.get("status") == "ok" for dep in dependencies.values())
        else "not_ready"
    )
    return {"status": status, "dependencies": dependencies}


def _refresh_gauges(request: Request) -> None:
    engine = _engine(request)
    stats = engine.pool.stats()
    metrics = request.app.state.metrics
    metrics.set_gauge("workers_busy", stats["busy"])
    metrics.set_gauge("queue_depth", stats["queued"])
    metrics.set_gauge("apps_locked", len(engine.locks.snapshot()))


@router.get("/metrics")
def metrics(request: Request) -> dict[str, object]:
    _refresh_gauges(request)
    return request.app.state.metrics.snapshot()


@router.get("/metrics/prometheus")
def metrics_prometheus(request: Request) -> PlainTextResponse:
    _refresh_gauges(request)
    payload = render_prometheus(request.app.state.metrics.snapshot())
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4")


@router.get("/apps")
def list_apps(request: Request) -> list[dict[str, Any]]:
    return _engine(request).app_overview()


@router.get("/apps/bundles")
def list_bundles(request: Request) -> list[dict[str, Any]]:
    engine = _engine(request)
    return [
        {
            "id": bundle.id,
            "name": bundle.name,
            "app_ids": list(bundle.app_ids),
            "apps": [
                {"id": app_id, "name": engine.registry.get_app(app_id).name}
                for app_id in bundle.app_ids
            ],
        }
        for bundle in engine.registry.list_bundles()
    ]


@router.post("/apps/bundles/{bundle_id}/install", status_code=202)
def install_bundle(bundle_id: str, request: Request) -> dict[str, Any]:
    task = _engine(request).install_bundle(bundle_id)
    return task_payload(task)


@router.get("/apps/tasks")
def list_tasks(
    request: Request,
    limit: int = Query(80, ge=1, le=500),
    status: str | None = None,
    app_id: str | None = None,
    since: str | None = None,
) -> list[dict[str, Any]]:
    if status is not None and status not in TASK_STATUSES:
        raise HTTPException(status_code=400, detail=f"unknown task status: {status}")
    tasks = _engine(request).list_tasks(limit=limit, status=status, app_id=app_id, since=since)
    return [task_payload(task) for task in tasks]


@router.get("/apps/tasks/{task_id}")
def get_task(task_id: int, request: Request) -> dict[str, Any]:
    return task_payload(_engine(request).get_task(task_id))


@router.get("/apps/tasks/{task_id}/logs")
def get_task_logs(task_id: int, request: Request) -> dict[str, Any]:
    task = _engine(request).get_task(task_id)
    return {
        "task_id": task.id,
        "status": task.status,
        "progress": task.progress,
        "logText": task.log_text,
    }


@router.get("/apps/tasks/{task_id}/lineage")
def get_task_lineage(task_id: int, request: Request) -> dict[str, Any]:
    chain = _engine(request).lineage(task_id)
    return {"task_id": task_id, "lineage": [task_payload(task) for task in chain]}


@router.post("/apps/tasks/{task_id}/retry", status_code=202)
def retry_task(task_id: int, request: Request) -> dict[str, Any]:
    return task_payload(_engine(request).retry(task_id))


@router.post("/apps/{app_id}/{action}", status_code=202)
def app_action(app_id: str, action: str, request: Request) -> dict[str, Any]:
    if action not in _POST_ACTIONS:
        raise HTTPException(status_code=404, detail=f"unsupported action: {action}")
    task = _engine(request).submit_action(app_id, action)
    return task_payload(task)


@router.delete("/apps/{app_id}", status_code=202)
def uninstall_app(
    app_id: str,
    request: Request,
    remove_data: bool = Query(False, alias="removeData"),
) -> dict[str, Any]:
    task = _engine(request).submit_action(app_id, ACTION_UNINSTALL, remove_data=remove_data)
    return task_payload(task)
