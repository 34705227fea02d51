from types import SimpleNamespace

import docker
import pytest

from devenv.core.docker_client import (
    DockerClient,
    build_port_bindings,
    container_info_from_attrs,
    split_image_reference,
)
from devenv.core.errors import ContainerNotFoundError, ExternalServiceError


class _FakeContainer:
    def __init__(self, container_id="abc123def4567890", attrs=None):
        self.id = container_id
        self.attrs = attrs or {}
        self.calls = []

    def start(self):
        self.calls.append("start")

    def stop(self):
        self.calls.append("stop")

    def remove(self, force=False):
        self.calls.append(("remove", force))

    def exec_run(self, cmd, tty=False, user=""):
        self.calls.append(("exec", cmd, user))
        return SimpleNamespace(exit_code=0, output=b"installed\n")


class _FakeContainers:
    def __init__(self):
        self.created = []
        self.by_id = {}
        self.get_error = None

    def create(self, **config):
        self.created.append(config)
        container = _FakeContainer()
        self.by_id[container.id] = container
        return container

    def get(self, container_id):
        if self.get_error is not None:
            raise self.get_error
        if container_id not in self.by_id:
            raise docker.errors.NotFound(f"No such container: {container_id}")
        return self.by_id[container_id]

    def list(self, all=False, filters=None):
        self.list_filters = filters
        return list(self.by_id.values())


class _FakeImages:
    def __init__(self, local=()):
        self.local = set(local)
        self.pulled = []

    def get(self, image):
        if image not in self.local:
            raise docker.errors.ImageNotFound(f"No such image: {image}")
        return SimpleNamespace(id=image)

    def pull(self, repository, tag=None):
        self.pulled.append((repository, tag))


def _runtime(local_images=()):
    sdk = SimpleNamespace(containers=_FakeContainers(), images=_FakeImages(local_images))
    return DockerClient(client=sdk), sdk


def test_split_image_reference():
    assert split_image_reference("node:20") == ("node", "20")
    assert split_image_reference("node") == ("node", "latest")
    assert split_image_reference("registry:5000/app") == ("registry:5000/app", "latest")
    assert split_image_reference("registry:5000/app:1.2") == ("registry:5000/app", "1.2")


def test_build_port_bindings():
    assert build_port_bindings({3000: 49200, "5173": "49201"}) == {"3000/tcp": 49200, "5173/tcp": 49201}
    assert build_port_bindings(None) == {}


def test_container_info_from_inspect_and_summary_shapes():
    inspected = container_info_from_attrs(
        {
            "Id": "abc",
            "Name": "/demo-main",
            "State": {"Status": "running", "Running": True},
            "Config": {"Image": "node:20", "Labels": {"devenv.managed": "true"}},
            "NetworkSettings": {"Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49200"}]}},
        }
    )
    assert inspected.name == "demo-main"
    assert inspected.running is True
    assert inspected.labels == {"devenv.managed": "true"}
    assert inspected.ports["3000/tcp"][0]["HostPort"] == "49200"

    summary = container_info_from_attrs({"Id": "def", "Names": ["/demo-x"], "State": "exited", "Labels": {}})
    assert summary.name == "demo-x"
    assert summary.running is False
    assert summary.status == "exited"


def test_create_container_builds_sdk_config():
    runtime, sdk = _runtime()

    container_id = runtime.create_container(
        name="demo-main",
        image="node:20",
        workspace_dir="/repo/.devenv/worktrees/main",
        env_vars=["A=1"],
        labels={"devenv.project": "demo"},
        port_bindings={3000: 49200},
    )

    assert container_id == "abc123def4567890"
    (config,) = sdk.containers.created
    assert config["name"] == "demo-main"
    assert config["environment"] == ["A=1"]
    assert config["labels"] == {"devenv.managed": "true", "devenv.project": "demo"}
    assert config["ports"] == {"3000/tcp": 49200}
    assert config["volumes"] == {"/repo/.devenv/worktrees/main": {"bind": "/workspace", "mode": "rw"}}
    assert config["working_dir"] == "/workspace"


def test_missing_container_maps_to_container_not_found():
    runtime, _ = _runtime()

    with pytest.raises(ContainerNotFoundError):
        runtime.start("missing")
    with pytest.raises(ContainerNotFoundError):
        runtime.inspect("missing")


def test_api_error_maps_to_external_error_with_upstream_status():
    runtime, sdk = _runtime()
    response = SimpleNamespace(status_code=409, url="http://docker/containers", reason="Conflict")
    sdk.containers.get_error = docker.errors.APIError("conflict", response=response, explanation="container is paused")

    with pytest.raises(ExternalServiceError) as exc_info:
        runtime.stop("abc")

    assert exc_info.value.upstream_status == 409
    assert "container is paused" in exc_info.value.message


def test_ensure_image_pulls_only_when_missing():
    runtime, sdk = _runtime(local_images=["node:20"])

    runtime.ensure_image("node:20")
    runtime.ensure_image("caddy:alpine")

    assert sdk.images.pulled == [("caddy", "alpine")]


def test_exec_returns_exit_code_and_output():
    runtime, sdk = _runtime()
    container_id = runtime.create_container(name="demo-main", image="node:20")

    assert runtime.exec(container_id, ["sh", "-c", "npm install"]) == (0, "installed\n")
    assert runtime.exec(container_id, ["sh", "-c", "echo ~"], user="node") == (0, "installed\n")
    assert sdk.containers.by_id[container_id].calls[-1] == ("exec", ["sh", "-c", "echo ~"], "node")


def test_list_filters_by_label():
    runtime, sdk = _runtime()
    runtime.create_container(name="demo-main", image="node:20")
    sdk.containers.by_id["abc123def4567890"].attrs = {
        "Id": "abc123def4567890",
        "Names": ["/demo-main"],
        "Image": "node:20",
        "State": "running",
        "Labels": {"devenv.managed": "true"},
    }

    listed = runtime.list("devenv.managed=true")

    assert sdk.containers.list_filters == {"label": ["devenv.managed=true"]}
    assert len(listed) == 1
    assert listed[0].running is True
    assert listed[0].labels == {"devenv.managed": "true"}


def test_ensure_image_wraps_transport_errors_and_pulls_after_api_errors():
    runtime, sdk = _runtime()

    def unreachable(image):
        raise docker.errors.DockerException("Error while fetching server API version")

    sdk.images.get = unreachable
    with pytest.raises(ExternalServiceError) as exc_info:
        runtime.ensure_image("node:20")
    assert exc_info.value.code == "docker_request_failed"
    assert sdk.images.pulled == []

    def broken_inspect(image):
        raise docker.errors.APIError("500 Server Error")

    sdk.images.get = broken_inspect
    runtime.ensure_image("node:20")
    assert sdk.images.pulled == [("node", "20")]
