from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import ValidationError

EXCLUDED_DIRS = {"node_modules", ".git", "dist", ".devenv", "worktrees"}
ENV_FILE_PATTERN = re.compile(r"^\.env(\..+)?$")
MAX_DISCOVERY_DEPTH = 2
DEFAULT_ENV_FILE = ".env"


@dataclass
class DiscoveredEnvFile:
    relative_path: str
    content: str


def discover_env_files(base_path: str | Path) -> list[DiscoveredEnvFile]:
    base = Path(base_path)
    results: list[DiscoveredEnvFile] = []
    _walk(base, base, 0, results)
    return sorted(results, key=lambda item: item.relative_path)


def _walk(base: Path, current: Path, depth: int, results: list[DiscoveredEnvFile]) -> None:
    if depth > MAX_DISCOVERY_DEPTH:
        return
    try:
        entries = list(os.scandir(current))
    except OSError:
        return

    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            if entry.name not in EXCLUDED_DIRS:
                _walk(base, Path(entry.path), depth + 1, results)
        elif entry.is_file() and ENV_FILE_PATTERN.match(entry.name):
            path = Path(entry.path)
            results.append(
                DiscoveredEnvFile(
                    relative_path=path.relative_to(base).as_posix(),
                    content=path.read_text(encoding="utf-8", errors="replace"),
                )
            )


def parse_env_content(content: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        key, sep, value = trimmed.partition("=")
        if sep and key:
            values[key] = value
    return values


def split_assignment(assignment: str) -> tuple[str, str]:
    key, sep, value = assignment.partition("=")
    if not sep or not key:
        raise ValidationError(f'Invalid format: "{assignment}". Expected KEY=VALUE.', code="invalid_env_assignment")
    return key, value


def set_env_value(content: str, key: str, value: str) -> str:
    lines = content.split("\n")
    for index, line in enumerate(lines):
        if line.startswith(f"{key}="):
            lines[index] = f"{key}={value}"
            return "\n".join(lines)

    if content and not content.endswith("\n"):
        content += "\n"
    return f"{content}{key}={value}\n"
