from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Protocol

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from nas_webapp.registry import AppDefinition

logger = logging.getLogger("nas_webapp.driver")

MANAGED_LABEL = "nas_webapp.app_id"


class DriverError(RuntimeError):
    """A container runtime call failed; the message is shown to the user verbatim."""


class DriverTimeoutError(DriverError):
    pass


@dataclass(slots=True, frozen=True)
class ContainerSpec:
    name: str
    image: str
    ports: dict[str, int] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    restart_policy: str = "unless-stopped"
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_app(cls, app: AppDefinition) -> ContainerSpec:
        return cls(
            name=app.container_name,
            image=app.image,
            ports=dict(app.ports),
            volumes=dict(app.volumes),
            environment=dict(app.environment),
            restart_policy=app.restart_policy,
            labels={MANAGED_LABEL: app.id},
        )


@dataclass(slots=True, frozen=True)
class ContainerState:
    installed: bool
    running: bool
    health: str
    error: str | None = None


class ContainerDriver(Protocol):
    def pull_image(self, ref: str) -> None: ...

    def create_container(self, spec: ContainerSpec) -> str: ...

    def start_container(self, name: str) -> None: ...

    def stop_container(self, name: str) -> None: ...

    def restart_container(self, name: str) -> None: ...

    def remove_container(self, name: str, *, remove_volumes: bool = False) -> None: ...

    def inspect(self, name: str) -> ContainerState: ...


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ImageNotFound as exc:
        raise DriverError(f"image not found: {exc.explanation or exc}") from exc
    except NotFound as exc:
        raise DriverError("container not found") from exc
    except APIError as exc:
        raise DriverError(str(exc.explanation or exc)) from exc
    except DockerException as exc:
        logger.warning("docker call failed operation=%s error=%s", operation, exc)
        raise DriverError(str(exc)) from exc


class DockerDriver:
    """Container runtime driver backed by the Docker Engine API."""

    def __init__(self, *, base_url: str | None = None, client: docker.DockerClient | None = None) -> None:
        self._base_url = base_url
        self._client = client
        self._client_lock = threading.Lock()

    def _docker(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client is None:
                with _translate_errors("connect"):
                    if self._base_url:
                        self._client = docker.DockerClient(base_url=self._base_url)
                    else:
                        self._client = docker.from_env()
            return self._client

    def pull_image(self, ref: str) -> None:
        repository, tag = parse_repository_tag(ref)
        with _translate_errors("pull"):
            self._docker().images.pull(repository, tag=tag or "latest")

    def create_container(self, spec: ContainerSpec) -> str:
        with _translate_errors("create"):
            container = self._docker().containers.create(
                spec.image,
                name=spec.name,
                ports=spec.ports,
                volumes={host: {"bind": target, "mode": "rw"} for host, target in spec.volumes.items()},
                environment=spec.environment,
                restart_policy={"Name": spec.restart_policy},
                labels=spec.labels,
            )
        return str(container.id)

    def start_container(self, name: str) -> None:
        with _translate_errors("start"):
            self._docker().containers.get(name).start()

    def stop_container(self, name: str) -> None:
        with _translate_errors("stop"):
            self._docker().containers.get(name).stop()

    def restart_container(self, name: str) -> None:
        with _translate_errors("restart"):
            self._docker().containers.get(name).restart()

    def remove_container(self, name: str, *, remove_volumes: bool = False) -> None:
        with _translate_errors("remove"):
            self._docker().containers.get(name).remove(v=remove_volumes, force=True)

    def inspect(self, name: str) -> ContainerState:
        try:
            with _translate_errors("inspect"):
                container = self._docker().containers.get(name)
        except DriverError as exc:
            if str(exc) == "container not found":
                return ContainerState(installed=False, running=False, health="not_installed")
            raise
        running = container.status == "running"
        health = (container.attrs.get("State") or {}).get("Health") or {}
        health_status = health.get("Status") or ("running" if running else "stopped")
        return ContainerState(installed=True, running=running, health=str(health_status))
