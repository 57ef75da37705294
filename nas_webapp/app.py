from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nas_webapp.api import router as api_router
from nas_webapp.db import build_engine, init_db
from nas_webapp.driver import ContainerDriver, DockerDriver
from nas_webapp.errors import (
    AppBusyError,
    RetryNotAllowedError,
    TaskNotFoundError,
    UnknownAppError,
    UnknownBundleError,
)
from nas_webapp.executor import ActionExecutor
from nas_webapp.locks import AppLockManager
from nas_webapp.logging_config import configure_structured_logging, request_id_middleware
from nas_webapp.observability import MetricsCollector
from nas_webapp.registry import AppRegistry, load_registry
from nas_webapp.settings import Settings
from nas_webapp.startup_checks import validate_startup_contract
from nas_webapp.task_engine import TaskEngine
from nas_webapp.task_store import TaskStore
from nas_webapp.worker_pool import WorkerPool


async def app_busy_to_http(_request: Request, exc: AppBusyError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": {
                "message": "application busy",
                "app_id": exc.app_id,
                "blocking_task_id": exc.blocking_task_id,
            }
        },
    )


async def not_found_to_http(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def conflict_to_http(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def value_error_to_http(_request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.task_engine.start()
    try:
        yield
    finally:
        app.state.task_engine.stop()


def create_app(
    settings: Settings | None = None,
    *,
    driver: ContainerDriver | None = None,
    registry: AppRegistry | None = None,
) -> FastAPI:
    settings = settings or Settings()
    configure_structured_logging(level=settings.nas_log_level)

    engine = build_engine(settings.nas_db_path, db_url=settings.nas_db_url)
    init_db(engine)
    registry = registry or load_registry(
        settings.nas_catalog_path,
        values=settings.integration_values(),
    )
    validate_startup_contract(settings, engine=engine, registry=registry)

    driver = driver or DockerDriver(base_url=settings.nas_docker_base_url)
    metrics = MetricsCollector()
    store = TaskStore(engine=engine)
    locks = AppLockManager()
    executor = ActionExecutor(
        store=store,
        registry=registry,
        driver=driver,
        locks=locks,
        driver_timeout_seconds=settings.nas_driver_timeout_seconds,
        pull_timeout_seconds=settings.nas_pull_timeout_seconds,
    )
    pool = WorkerPool(
        store=store,
        locks=locks,
        executor=executor,
        slots=settings.nas_worker_slots,
        metrics=metrics,
    )
    task_engine = TaskEngine(
        store=store,
        locks=locks,
        registry=registry,
        executor=executor,
        pool=pool,
        metrics=metrics,
    )

    app = FastAPI(title="NAS App Center", lifespan=_lifespan)
    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(AppBusyError, app_busy_to_http)
    for error in (UnknownAppError, UnknownBundleError, TaskNotFoundError):
        app.add_exception_handler(error, not_found_to_http)
    app.add_exception_handler(RetryNotAllowedError, conflict_to_http)
    app.add_exception_handler(ValueError, value_error_to_http)

    app.state.settings = settings
    app.state.engine = engine
    app.state.registry = registry
    app.state.metrics = metrics
    app.state.task_store = store
    app.state.locks = locks
    app.state.task_engine = task_engine

    app.include_router(api_router, prefix="/api")
    return app
