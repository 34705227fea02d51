from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..config import DEFAULT_CONTAINER_PORT, DEFAULT_IMAGE, DEFAULT_REMOTE_USER
from ..core.errors import ValidationError

DevcontainerConfig = dict[str, Any]

CONFIG_CANDIDATES = (
    Path(".devcontainer") / "devcontainer.json",
    Path(".devcontainer.json"),
)


def _strip_jsonc_comments(text: str) -> str:
    # devcontainer.json allows // and /* */ comments outside of strings.
    out = []
    i = 0
    in_string = False
    while i < len(text):
        char = text[i]
        if in_string:
            out.append(char)
            if char == "\\" and i + 1 < len(text):
                out.append(text[i + 1])
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue
        if char == '"':
            in_string = True
            out.append(char)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = len(text) if end == -1 else end + 2
        else:
            out.append(char)
            i += 1
    return "".join(out)


def load_devcontainer_config(path: str | Path) -> DevcontainerConfig:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        parsed = json.loads(_strip_jsonc_comments(raw))
    except json.JSONDecodeError as error:
        raise ValidationError(f"Invalid devcontainer config {path}: {error}", code="invalid_devcontainer") from error
    if not isinstance(parsed, dict):
        raise ValidationError(f"Devcontainer config {path} must be a JSON object", code="invalid_devcontainer")
    return parsed


def find_devcontainer_config(project_path: str | Path) -> DevcontainerConfig | None:
    for candidate in CONFIG_CANDIDATES:
        path = Path(project_path) / candidate
        if path.exists():
            return load_devcontainer_config(path)
    return None


def resolve_image(config: DevcontainerConfig | None) -> str:
    image = (config or {}).get("image")
    return str(image) if image else DEFAULT_IMAGE


def resolve_forward_ports(config: DevcontainerConfig | None) -> list[int]:
    ports = []
    for port in (config or {}).get("forwardPorts") or []:
        # "host:port" entries refer to other services; only plain ports are ours.
        if isinstance(port, int) or (isinstance(port, str) and port.isdigit()):
            value = int(port)
            if value not in ports:
                ports.append(value)
    return ports or [DEFAULT_CONTAINER_PORT]


def resolve_env_vars(config: DevcontainerConfig | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for key in ("containerEnv", "remoteEnv"):
        section = (config or {}).get(key) or {}
        for name, value in section.items():
            if value is not None:
                env[str(name)] = str(value)
    return env


def resolve_post_create_command(config: DevcontainerConfig | None) -> str | None:
    command = (config or {}).get("postCreateCommand")
    if not command:
        return None
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    if isinstance(command, dict):
        return " && ".join(str(part) for part in command.values() if part)
    return str(command)


def resolve_remote_user(config: DevcontainerConfig | None) -> str:
    user = (config or {}).get("remoteUser")
    return str(user) if user else DEFAULT_REMOTE_USER
