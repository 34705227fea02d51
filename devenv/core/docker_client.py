from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import docker

from ..config import CONTAINER_LABEL_PREFIX, CONTAINER_WORKSPACE_DIR
from .errors import ContainerNotFoundError, ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ContainerInfo:
    id: str
    name: str
    running: bool
    status: str
    image: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    ports: dict[str, list[dict[str, str]] | None] = field(default_factory=dict)


def split_image_reference(image: str) -> tuple[str, str]:
    # "registry:5000/app" has a colon in the registry part, not a tag.
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repository, tag


def build_port_bindings(port_bindings: dict[int | str, int | str] | None) -> dict[str, int]:
    ports: dict[str, int] = {}
    for container_port, host_port in (port_bindings or {}).items():
        ports[f"{container_port}/tcp"] = int(host_port)
    return ports


def container_info_from_attrs(attrs: dict[str, Any]) -> ContainerInfo:
    state = attrs.get("State") or {}
    config = attrs.get("Config") or {}
    network = attrs.get("NetworkSettings") or {}
    if isinstance(state, str):
        # containers.list() returns the summary shape with State as a plain string.
        status = state
        running = state == "running"
        names = attrs.get("Names") or []
        name = names[0] if names else ""
        labels = attrs.get("Labels") or {}
        image = attrs.get("Image")
    else:
        status = str(state.get("Status") or "")
        running = bool(state.get("Running"))
        name = str(attrs.get("Name") or "")
        labels = config.get("Labels") or {}
        image = config.get("Image")
    return ContainerInfo(
        id=str(attrs.get("Id") or ""),
        name=name.lstrip("/"),
        running=running,
        status=status,
        image=image,
        labels=dict(labels),
        ports=dict(network.get("Ports") or {}),
    )


class DockerClient:
    """Container runtime gateway backed by the Docker SDK.

    Every method is blocking; async callers move them to a worker thread.
    A missing container always surfaces as ``ContainerNotFoundError`` so
    callers can tell drift apart from a failing daemon.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as error:
                raise ExternalServiceError(
                    f"Docker daemon is unavailable: {error}",
                    code="docker_unavailable",
                ) from error
        return self._client

    def _call(self, subject: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except docker.errors.NotFound as error:
            raise ContainerNotFoundError(f"Container not found: {subject}") from error
        except docker.errors.APIError as error:
            message = error.explanation or str(error)
            raise ExternalServiceError(
                f"Docker API error for {subject}: {message}",
                code="docker_api_error",
                upstream_status=error.status_code,
            ) from error
        except docker.errors.DockerException as error:
            raise ExternalServiceError(
                f"Docker request failed for {subject}: {error}",
                code="docker_request_failed",
            ) from error

    def create_container(
        self,
        name: str,
        image: str,
        workspace_dir: str | None = None,
        env_vars: list[str] | None = None,
        labels: dict[str, str] | None = None,
        port_bindings: dict[int | str, int | str] | None = None,
        cmd: list[str] | None = None,
        extra_hosts: dict[str, str] | None = None,
    ) -> str:
        config: dict[str, Any] = {
            "image": image,
            "name": name,
            "detach": True,
            "tty": True,
            "stdin_open": True,
            "environment": list(env_vars or []),
            "labels": {f"{CONTAINER_LABEL_PREFIX}.managed": "true", **(labels or {})},
            "ports": build_port_bindings(port_bindings),
        }
        if cmd:
            config["command"] = cmd
        if extra_hosts:
            config["extra_hosts"] = dict(extra_hosts)
        if workspace_dir:
            config["volumes"] = {workspace_dir: {"bind": CONTAINER_WORKSPACE_DIR, "mode": "rw"}}
            config["working_dir"] = CONTAINER_WORKSPACE_DIR

        container = self._call(name, lambda: self.client.containers.create(**config))
        logger.info("Created container %s (%s) from %s", name, container.id[:12], image)
        return container.id

    def start(self, container_id: str) -> None:
        self._call(container_id, lambda: self.client.containers.get(container_id).start())

    def stop(self, container_id: str) -> None:
        self._call(container_id, lambda: self.client.containers.get(container_id).stop())

    def remove(self, container_id: str, force: bool = True) -> None:
        self._call(container_id, lambda: self.client.containers.get(container_id).remove(force=force))

    def inspect(self, container_id: str) -> ContainerInfo:
        container = self._call(container_id, lambda: self.client.containers.get(container_id))
        return container_info_from_attrs(container.attrs)

    def pull(self, image: str) -> None:
        repository, tag = split_image_reference(image)
        self._call(image, lambda: self.client.images.pull(repository, tag=tag))

    def ensure_image(self, image: str) -> None:
        try:
            self._call(image, lambda: self.client.images.get(image))
            return
        except ContainerNotFoundError:
            logger.info("Pulling image %s", image)
        except ExternalServiceError as error:
            # Inspect errors fall through to pull; transport failures do not.
            if error.code != "docker_api_error":
                raise
            logger.warning("Failed to inspect local image %s: %s", image, error.message)
        self.pull(image)

    def list(self, label_filter: str | None = None) -> list[ContainerInfo]:
        filters = {"label": [label_filter]} if label_filter else None
        containers = self._call(
            label_filter or "containers",
            lambda: self.client.containers.list(all=True, filters=filters),
        )
        return [container_info_from_attrs(container.attrs) for container in containers]

    def exec(self, container_id: str, cmd: list[str], user: str = "") -> tuple[int, str]:
        container = self._call(container_id, lambda: self.client.containers.get(container_id))
        result = self._call(container_id, lambda: container.exec_run(cmd, tty=True, user=user))
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return int(result.exit_code or 0), output
