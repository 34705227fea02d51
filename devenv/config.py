import os
from pathlib import Path

DEVENV_DIR = ".devenv"
DEVENV_WORKTREES_DIR = "worktrees"
DEVENV_DB_FILE = "devenv.db"

DEFAULT_CONTAINER_PORT = 3000
HOST_PORT_RANGE_START = 49200
HOST_PORT_RANGE_END = 65535
LOCALHOST_SUFFIX = ".localhost"
MAX_PORT_ALLOCATION_RETRIES = 8

CONTAINER_LABEL_PREFIX = "devenv"
CONTAINER_WORKSPACE_DIR = "/workspace"
DEFAULT_IMAGE = "node:20"
DEFAULT_REMOTE_USER = "node"

CADDY_CONTAINER_NAME = "devenv-caddy"
CADDY_IMAGE = "caddy:alpine"
CADDY_HOST_GATEWAY = "host.docker.internal"
CADDY_SERVER_NAME = "devenv"
ROUTE_ID_PREFIX = "devenv"

API_PORT_DEFAULT = 9001
DASHBOARD_PORT = 9000


def resolve_devenv_home() -> Path:
    raw = (os.getenv("DEVENV_HOME", "") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / DEVENV_DIR


def resolve_database_url() -> str:
    raw = (os.getenv("DEVENV_DATABASE_URL", "") or "").strip()
    if raw:
        return raw
    return f"sqlite+aiosqlite:///{resolve_devenv_home() / DEVENV_DB_FILE}"


def resolve_caddy_admin_url() -> str:
    raw = (os.getenv("DEVENV_CADDY_ADMIN_URL", "") or "").strip()
    return (raw or "http://localhost:2019").rstrip("/")


def resolve_caddy_timeout() -> float:
    raw = (os.getenv("DEVENV_CADDY_HTTP_TIMEOUT", "") or "").strip()
    try:
        value = float(raw) if raw else 5.0
    except ValueError:
        value = 5.0
    if value < 1.0:
        return 1.0
    if value > 30.0:
        return 30.0
    return value


def resolve_api_port() -> int:
    raw = (os.getenv("DEVENV_API_PORT", "") or "").strip()
    if raw.isdigit() and 0 < int(raw) < 65536:
        return int(raw)
    return API_PORT_DEFAULT


def resolve_allowed_origins() -> list[str]:
    raw = os.getenv("ALLOW_ORIGINS", f"http://localhost:{DASHBOARD_PORT}")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]
