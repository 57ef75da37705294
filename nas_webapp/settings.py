from __future__ import annotations

from pathlib import Path
from typing import ClassVar

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    _ALLOWED_APP_ENVS: ClassVar[set[str]] = {"local", "staging", "production", "prod"}

    app_env: str = "local"
    nas_data_root: Path = Path("runtime/nas")
    nas_db_path: Path = Path("runtime/nas/panel.sqlite3")
    nas_db_url: str | None = None
    nas_catalog_path: Path | None = None
    nas_worker_slots: int = 4
    nas_driver_timeout_seconds: float = 120.0
    nas_pull_timeout_seconds: float = 1800.0
    nas_docker_base_url: str | None = None
    nas_log_level: str = "INFO"

    # Integration defaults used to render the app catalog.
    media_path: Path = Path("/srv/media")
    downloads_path: Path = Path("/srv/downloads")
    docker_data_path: Path = Path("/srv/docker")
    jellyfin_host_port: int = 18096
    qb_web_port: int = 18080
    qb_peer_port: int = 16881
    portainer_host_port: int = 19000
    watchtower_interval: int = 86400
    timezone: str = "UTC"

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, value: str) -> str:
        if value not in cls._ALLOWED_APP_ENVS:
            allowed = ", ".join(sorted(cls._ALLOWED_APP_ENVS))
            raise ValueError(f"app_env must be one of: {allowed}")
        return value

    @field_validator("nas_worker_slots")
    @classmethod
    def validate_worker_slots(cls, value: int) -> int:
        if value < 1:
            raise ValueError("nas_worker_slots must be >= 1")
        return value

    @field_validator("nas_driver_timeout_seconds", "nas_pull_timeout_seconds")
    @classmethod
    def validate_timeouts(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("driver timeouts must be > 0")
        return value

    def integration_values(self) -> dict[str, str]:
        """Values substituted into `{placeholders}` of the app catalog."""
        return {
            "media_path": str(self.media_path),
            "downloads_path": str(self.downloads_path),
            "docker_data_path": str(self.docker_data_path),
            "jellyfin_host_port": str(self.jellyfin_host_port),
            "qb_web_port": str(self.qb_web_port),
            "qb_peer_port": str(self.qb_peer_port),
            "portainer_host_port": str(self.portainer_host_port),
            "watchtower_interval": str(self.watchtower_interval),
            "timezone": self.timezone,
        }

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
