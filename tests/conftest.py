import json
import os
import tempfile
from contextlib import asynccontextmanager

import httpx
import pytest

os.environ.setdefault("DEVENV_HOME", tempfile.mkdtemp(prefix="devenv-tests-"))

from devenv.core.caddy import CaddyClient, ROUTES_PATH, SERVER_CONFIG_PATH  # noqa: E402
from devenv.core.docker_client import ContainerInfo  # noqa: E402
from devenv.core.errors import ContainerNotFoundError, ExternalServiceError  # noqa: E402
from devenv.core.ports import PortAllocator  # noqa: E402
from devenv.core.reconciler import EnvironmentReconciler  # noqa: E402
from devenv.core.routes import RouteSynchronizer  # noqa: E402
from devenv.database import build_engine, build_sessionmaker, init_db  # noqa: E402


class FakeRuntime:
    """In-memory stand-in for DockerClient."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: list[str] = []
        self.exec_calls: list[tuple[str, list[str]]] = []
        self.exec_users: list[str] = []
        self.exec_result = (0, "")
        self.failures: dict[str, Exception] = {}
        self._counter = 0

    def fail_next(self, action, error=None):
        self.failures[action] = error or ExternalServiceError(f"{action} failed", upstream_status=500)

    def _maybe_fail(self, action):
        error = self.failures.pop(action, None)
        if error is not None:
            raise error

    def _resolve(self, ref):
        if ref in self.containers:
            return ref
        for container_id, container in self.containers.items():
            if container["name"] == ref:
                return container_id
        raise ContainerNotFoundError(f"Container not found: {ref}")

    def by_name(self, name):
        return next((c for c in self.containers.values() if c["name"] == name), None)

    def ensure_image(self, image):
        self._maybe_fail("ensure_image")
        self.images.append(image)

    def pull(self, image):
        self.ensure_image(image)

    def create_container(
        self,
        name,
        image,
        workspace_dir=None,
        env_vars=None,
        labels=None,
        port_bindings=None,
        cmd=None,
        extra_hosts=None,
    ):
        self._maybe_fail("create_container")
        if self.by_name(name) is not None:
            raise ExternalServiceError(f"Conflict. The container name {name} is already in use", upstream_status=409)
        self._counter += 1
        container_id = f"container-{self._counter}"
        self.containers[container_id] = {
            "id": container_id,
            "name": name,
            "image": image,
            "workspace_dir": workspace_dir,
            "env": list(env_vars or []),
            "labels": dict(labels or {}),
            "ports": dict(port_bindings or {}),
            "running": False,
        }
        return container_id

    def start(self, container_id):
        self._maybe_fail("start")
        self.containers[self._resolve(container_id)]["running"] = True

    def stop(self, container_id):
        self._maybe_fail("stop")
        self.containers[self._resolve(container_id)]["running"] = False

    def remove(self, container_id, force=True):
        del self.containers[self._resolve(container_id)]

    def inspect(self, container_id):
        container = self.containers[self._resolve(container_id)]
        return ContainerInfo(
            id=container["id"],
            name=container["name"],
            running=container["running"],
            status="running" if container["running"] else "exited",
            image=container["image"],
            labels=container["labels"],
        )

    def list(self, label_filter=None):
        return [self.inspect(container_id) for container_id in self.containers]

    def exec(self, container_id, cmd, user=""):
        self._resolve(container_id)
        self.exec_calls.append((container_id, cmd))
        self.exec_users.append(user)
        if callable(self.exec_result):
            return self.exec_result(cmd, user)
        return self.exec_result


class FakeWorktrees:
    def __init__(self):
        self.created: list[tuple[str, str, str]] = []
        self.removed: list[tuple[str, str]] = []

    def is_git_repository(self, repo_path):
        return os.path.isdir(os.path.join(str(repo_path), ".git"))

    def create_worktree(self, repo_path, branch, worktree_path):
        if os.path.exists(str(worktree_path)):
            return False
        os.makedirs(str(worktree_path))
        self.created.append((str(repo_path), branch, str(worktree_path)))
        return True

    def remove_worktree(self, repo_path, worktree_path):
        self.removed.append((str(repo_path), str(worktree_path)))

    def list_branches(self, repo_path):
        return sorted({branch for _, branch, _ in self.created})


class FakeCaddyAdmin:
    """Just enough of the Caddy admin API to exercise route management."""

    def __init__(self):
        self.server = None
        self.requests: list[tuple[str, str]] = []
        self.forced: dict[tuple[str, str], int] = {}

    @property
    def routes(self):
        return (self.server or {}).get("routes") or []

    def route(self, route_id):
        return next((r for r in self.routes if r.get("@id") == route_id), None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))
        if (method, path) in self.forced:
            return httpx.Response(self.forced[(method, path)], json={"error": f"forced {method} {path}"})
        body = json.loads(request.content) if request.content else None

        if path == SERVER_CONFIG_PATH:
            if method == "GET":
                return httpx.Response(200, json=self.server)
            if method == "PUT":
                if self.server is not None:
                    return httpx.Response(409, json={"error": "key already exists: devenv"})
                self.server = body
                return httpx.Response(200)

        if path == ROUTES_PATH:
            if self.server is None:
                return httpx.Response(404, json={"error": "invalid traversal path"})
            if method == "GET":
                return httpx.Response(200, json=self.routes)
            if method == "POST":
                self.server.setdefault("routes", []).append(body)
                return httpx.Response(200)

        if path.startswith("/id/"):
            route_id = path[len("/id/"):]
            existing = self.route(route_id)
            if existing is None:
                return httpx.Response(404, json={"error": f"unknown object ID '{route_id}'"})
            if method == "GET":
                return httpx.Response(200, json=existing)
            if method == "PUT":
                index = self.routes.index(existing)
                self.server["routes"][index] = body
                return httpx.Response(200)
            if method == "DELETE":
                self.server["routes"].remove(existing)
                return httpx.Response(200)

        return httpx.Response(400, json={"error": f"unsupported {method} {path}"})

    def client(self) -> CaddyClient:
        return CaddyClient(admin_url="http://caddy.test", timeout=1, transport=httpx.MockTransport(self.handler))


class Harness:
    def __init__(self, runtime, worktrees, caddy, allocator):
        self.runtime = runtime
        self.worktrees = worktrees
        self.caddy = caddy
        self.allocator = allocator
        self.proxy_checks = 0

    def ensure_proxy(self, _runtime):
        self.proxy_checks += 1

    def reconciler(self, session) -> EnvironmentReconciler:
        return EnvironmentReconciler(
            db=session,
            runtime=self.runtime,
            routes=RouteSynchronizer(self.caddy.client()),
            worktrees=self.worktrees,
            allocator=self.allocator,
            ensure_proxy=self.ensure_proxy,
        )


@asynccontextmanager
async def open_session(database_url):
    engine = build_engine(database_url)
    await init_db(engine)
    try:
        async with build_sessionmaker(engine)() as session:
            yield session
    finally:
        await engine.dispose()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'devenv.db'}"


@pytest.fixture
def harness():
    return Harness(FakeRuntime(), FakeWorktrees(), FakeCaddyAdmin(), PortAllocator())


@pytest.fixture
def make_repo(tmp_path):
    def _make_repo(name="demo", devcontainer=None, env_files=None):
        repo = tmp_path / name
        (repo / ".git").mkdir(parents=True)
        if devcontainer is not None:
            (repo / ".devcontainer").mkdir()
            (repo / ".devcontainer" / "devcontainer.json").write_text(json.dumps(devcontainer))
        for relative_path, content in (env_files or {}).items():
            target = repo / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return repo

    return _make_repo
