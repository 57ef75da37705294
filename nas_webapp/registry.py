from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nas_webapp.errors import UnknownAppError, UnknownBundleError
from nas_webapp.models import BUNDLE_APP_PREFIX
from nas_webapp.settings import Settings


DEFAULT_CATALOG_PATH = Path(__file__).with_name("catalog.yaml")


@dataclass(slots=True, frozen=True)
class AppDefinition:
    id: str
    name: str
    container_name: str
    image: str
    description: str = ""
    category: str = ""
    ports: dict[str, int] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    restart_policy: str = "unless-stopped"
    open_port_key: str | None = None
    data_dir: Path | None = None


@dataclass(slots=True, frozen=True)
class BundleDefinition:
    id: str
    name: str
    app_ids: list[str]


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        raise ValueError(f"catalog placeholder `{key}` has no value")


def _render(value: Any, values: dict[str, str]) -> str:
    return str(value).format_map(_Placeholders(values))


def _require_str(payload: dict[str, Any], field_name: str) -> str:
    value = payload.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"catalog field `{field_name}` must be a non-empty string")
    return value.strip()


def _require_mapping(payload: dict[str, Any], field_name: str) -> dict[str, Any]:
    raw = payload.get(field_name, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"catalog field `{field_name}` must be a mapping")
    return raw


def _parse_ports(payload: dict[str, Any], values: dict[str, str]) -> dict[str, int]:
    ports: dict[str, int] = {}
    for container_port, host_port in _require_mapping(payload, "ports").items():
        rendered = _render(host_port, values)
        try:
            ports[_render(container_port, values)] = int(rendered)
        except ValueError as exc:
            raise ValueError(f"catalog host port must be an integer: {rendered}") from exc
    return ports


def _parse_app(payload: Any, values: dict[str, str]) -> AppDefinition:
    if not isinstance(payload, dict):
        raise ValueError("catalog apps must be objects")
    data_dir = payload.get("data_dir")
    return AppDefinition(
        id=_require_str(payload, "id"),
        name=_require_str(payload, "name"),
        container_name=_require_str(payload, "container_name"),
        image=_require_str(payload, "image"),
        description=str(payload.get("description", "")).strip(),
        category=str(payload.get("category", "")).strip(),
        ports=_parse_ports(payload, values),
        volumes={
            _render(host, values): _render(target, values)
            for host, target in _require_mapping(payload, "volumes").items()
        },
        environment={
            str(key): _render(val, values)
            for key, val in _require_mapping(payload, "environment").items()
        },
        restart_policy=str(payload.get("restart_policy", "unless-stopped")),
        open_port_key=payload.get("open_port_key") or None,
        data_dir=Path(_render(data_dir, values)) if data_dir else None,
    )


def _parse_bundle(payload: Any, known_apps: dict[str, AppDefinition]) -> BundleDefinition:
    if not isinstance(payload, dict):
        raise ValueError("catalog bundles must be objects")
    bundle_id = _require_str(payload, "id")
    raw_apps = payload.get("apps")
    if not isinstance(raw_apps, list) or not raw_apps:
        raise ValueError(f"bundle `{bundle_id}` must list at least one app")
    app_ids: list[str] = []
    for item in raw_apps:
        app_id = str(item).strip()
        if app_id not in known_apps:
            raise ValueError(f"bundle `{bundle_id}` references unknown app: {app_id}")
        if app_id in app_ids:
            raise ValueError(f"bundle `{bundle_id}` lists app twice: {app_id}")
        app_ids.append(app_id)
    return BundleDefinition(id=bundle_id, name=_require_str(payload, "name"), app_ids=app_ids)


class AppRegistry:
    """Read-only catalog of installable apps and bundles."""

    def __init__(self, apps: list[AppDefinition], bundles: list[BundleDefinition]) -> None:
        self._apps = {app.id: app for app in apps}
        self._bundles = {bundle.id: bundle for bundle in bundles}

    def get_app(self, app_id: str) -> AppDefinition:
        app = self._apps.get(app_id)
        if app is None:
            raise UnknownAppError(app_id)
        return app

    def get_bundle(self, bundle_id: str) -> BundleDefinition:
        bundle = self._bundles.get(bundle_id)
        if bundle is None:
            raise UnknownBundleError(bundle_id)
        return bundle

    def list_apps(self) -> list[AppDefinition]:
        return list(self._apps.values())

    def list_bundles(self) -> list[BundleDefinition]:
        return list(self._bundles.values())


def load_registry(path: Path | None = None, *, values: dict[str, str] | None = None) -> AppRegistry:
    catalog_path = path or DEFAULT_CATALOG_PATH
    payload = yaml.safe_load(catalog_path.read_text(encoding="utf-8")) or {}
    rows = payload.get("apps")
    if not isinstance(rows, list) or not rows:
        raise ValueError("catalog file must contain a non-empty `apps` list")

    if values is None:
        values = Settings().integration_values()

    apps: dict[str, AppDefinition] = {}
    for row in rows:
        app = _parse_app(row, values)
        if app.id in apps:
            raise ValueError(f"duplicated app id: {app.id}")
        if app.id.startswith(BUNDLE_APP_PREFIX):
            raise ValueError(f"app id must not use the bundle prefix: {app.id}")
        apps[app.id] = app

    bundles: dict[str, BundleDefinition] = {}
    for row in payload.get("bundles") or []:
        bundle = _parse_bundle(row, apps)
        if bundle.id in bundles:
            raise ValueError(f"duplicated bundle id: {bundle.id}")
        bundles[bundle.id] = bundle
    return AppRegistry(list(apps.values()), list(bundles.values()))
