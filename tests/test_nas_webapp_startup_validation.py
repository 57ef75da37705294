from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

import nas_webapp.startup_checks as startup_checks
from nas_webapp.registry import AppRegistry
from nas_webapp.startup_checks import validate_startup_contract


def test_reachable_store_and_catalog_pass(nas_settings, db_engine, registry) -> None:
    validate_startup_contract(nas_settings, engine=db_engine, registry=registry)


def test_unreachable_store_aborts_startup(nas_settings, registry, monkeypatch) -> None:
    monkeypatch.setattr(
        startup_checks,
        "ping",
        MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("disk I/O error"))),
    )

    with pytest.raises(RuntimeError, match="task store is not reachable"):
        validate_startup_contract(nas_settings, engine=MagicMock(), registry=registry)


def test_empty_catalog_aborts_startup(nas_settings, db_engine) -> None:
    with pytest.raises(ValueError, match="app catalog is empty"):
        validate_startup_contract(nas_settings, engine=db_engine, registry=AppRegistry([], []))


def test_in_memory_database_is_rejected(nas_settings, db_engine, registry) -> None:
    settings = nas_settings.model_copy(update={"nas_db_url": "sqlite:///:memory:"})

    with pytest.raises(ValueError, match="persistent database"):
        validate_startup_contract(settings, engine=db_engine, registry=registry)
