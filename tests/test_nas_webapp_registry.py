from __future__ import annotations

from pathlib import Path

import pytest

from nas_webapp.errors import UnknownAppError, UnknownBundleError
from nas_webapp.registry import AppRegistry, load_registry
from nas_webapp.settings import Settings


def test_default_catalog_renders_integration_settings(tmp_path: Path) -> None:
    values = Settings(
        docker_data_path=tmp_path / "docker",
        media_path=tmp_path / "media",
        jellyfin_host_port=28096,
        qb_web_port=28080,
        qb_peer_port=26881,
    ).integration_values()

    registry = load_registry(values=values)

    jellyfin = registry.get_app("jellyfin")
    assert jellyfin.container_name == "nas-jellyfin"
    assert jellyfin.ports == {"8096/tcp": 28096}
    assert jellyfin.volumes[str(tmp_path / "media")] == "/media"
    assert jellyfin.data_dir == tmp_path / "docker" / "jellyfin"

    qbittorrent = registry.get_app("qbittorrent")
    assert qbittorrent.ports == {"28080/tcp": 28080, "26881/tcp": 26881, "26881/udp": 26881}
    assert qbittorrent.environment["WEBUI_PORT"] == "28080"

    watchtower = registry.get_app("watchtower")
    assert watchtower.ports == {}
    assert watchtower.data_dir is None
    assert watchtower.environment["WATCHTOWER_POLL_INTERVAL"] == "86400"

    assert registry.get_bundle("media-stack").app_ids == ["jellyfin", "qbittorrent"]


def test_unknown_ids_raise_admission_errors(registry: AppRegistry) -> None:
    with pytest.raises(UnknownAppError, match="app not found: plex"):
        registry.get_app("plex")
    with pytest.raises(UnknownBundleError):
        registry.get_bundle("office-stack")


def _write_catalog(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "catalog.yaml"
    path.write_text(body, encoding="utf-8")
    return path


def test_bundle_referencing_unknown_app_is_rejected(tmp_path: Path) -> None:
    path = _write_catalog(
        tmp_path,
        """
apps:
  - id: jellyfin
    name: Jellyfin
    container_name: nas-jellyfin
    image: jellyfin/jellyfin:latest
bundles:
  - id: media-stack
    name: Media Stack
    apps: [jellyfin, sonarr]
""",
    )

    with pytest.raises(ValueError, match="unknown app: sonarr"):
        load_registry(path, values={})


def test_missing_placeholder_value_is_rejected(tmp_path: Path) -> None:
    path = _write_catalog(
        tmp_path,
        """
apps:
  - id: jellyfin
    name: Jellyfin
    container_name: nas-jellyfin
    image: jellyfin/jellyfin:latest
    ports:
      "8096/tcp": "{jellyfin_host_port}"
""",
    )

    with pytest.raises(ValueError, match="jellyfin_host_port"):
        load_registry(path, values={})


def test_duplicate_app_ids_and_bundle_prefix_are_rejected(tmp_path: Path) -> None:
    duplicate = _write_catalog(
        tmp_path,
        """
apps:
  - {id: jellyfin, name: Jellyfin, container_name: a, image: jellyfin/jellyfin}
  - {id: jellyfin, name: Jellyfin, container_name: b, image: jellyfin/jellyfin}
""",
    )
    with pytest.raises(ValueError, match="duplicated app id"):
        load_registry(duplicate, values={})

    prefixed = _write_catalog(
        tmp_path,
        """
apps:
  - {id: "bundle:x", name: X, container_name: x, image: busybox}
""",
    )
    with pytest.raises(ValueError, match="bundle prefix"):
        load_registry(prefixed, values={})
