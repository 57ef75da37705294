from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Request
from starlette.responses import Response

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# The Docker SDK logs every Engine API round trip through these.
_CHATTY_LOGGERS = ("docker", "urllib3")
_TARGET_PARAMS = ("app_id", "bundle_id", "task_id")


def configure_structured_logging(*, level: str = "INFO") -> None:
    resolved = getattr(logging, level.upper(), logging.INFO)
    package = logging.getLogger("nas_webapp")
    package.setLevel(resolved)
    package.propagate = True
    if not logging.getLogger().handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))


def _request_target(request: Request) -> str:
    """``app:<id>``, ``bundle:<id>`` or ``task:<id>`` for routes that address one, else ``-``."""
    params = request.scope.get("path_params") or {}
    parts = [f"{key.removesuffix('_id')}:{params[key]}" for key in _TARGET_PARAMS if key in params]
    return ",".join(parts) or "-"


async def request_id_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-Id") or uuid4().hex[:12]
    correlation_id = request.headers.get("X-Correlation-Id") or request_id
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    status_code = 500
    response: Response | None = None
    try:
        response = await call_next(request)
        status_code = int(response.status_code)
        return response
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logging.getLogger("nas_webapp.http").info(
            "request_id=%s correlation_id=%s method=%s path=%s target=%s status_code=%s duration_ms=%s",
            request_id,
            correlation_id,
            request.method,
            request.url.path,
            _request_target(request),
            status_code,
            elapsed_ms,
        )
        if response is not None:
            response.headers["X-Request-Id"] = request_id
            response.headers["X-Correlation-Id"] = correlation_id
