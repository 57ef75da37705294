from __future__ import annotations

from sqlalchemy.engine import Engine

from nas_webapp.db import ping
from nas_webapp.registry import AppRegistry
from nas_webapp.settings import Settings


def validate_startup_contract(settings: Settings, *, engine: Engine, registry: AppRegistry) -> None:
    if settings.nas_db_url and ":memory:" in settings.nas_db_url:
        raise ValueError("nas_db_url must point to a persistent database")
    try:
        ping(engine)
    except Exception as exc:
        raise RuntimeError(f"task store is not reachable: {exc}") from exc
    if not registry.list_apps():
        raise ValueError("app catalog is empty")
