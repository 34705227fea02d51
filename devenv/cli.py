"""Command line entry point (``devenv``)."""

from __future__ import annotations

import argparse
import asyncio
import logging
import subprocess
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from sqlalchemy.ext.asyncio import AsyncSession

from .config import resolve_api_port
from .core.caddy import CaddyClient
from .core.docker_client import DockerClient
from .core.errors import DevenvError, ExternalServiceError, NotFoundError
from .core.git import GitWorktrees
from .core.ports import PortAllocator
from .core.reconciler import EnvironmentReconciler
from .core.routes import RouteSynchronizer
from .core.settings import read_setting, remove_setting, write_setting
from . import database, store
from .models import Environment, EnvFile, Project


@asynccontextmanager
async def open_session() -> AsyncIterator[AsyncSession]:
    await database.init_db()
    try:
        async with database.AsyncSessionLocal() as session:
            yield session
    finally:
        await database.engine.dispose()


@asynccontextmanager
async def open_reconciler() -> AsyncIterator[EnvironmentReconciler]:
    async with open_session() as session:
        yield EnvironmentReconciler(
            db=session,
            runtime=DockerClient(),
            routes=RouteSynchronizer(CaddyClient()),
            worktrees=GitWorktrees(),
            allocator=PortAllocator(),
        )


def _format_urls(environment: Environment) -> list[str]:
    return [
        f"http://{mapping.hostname} -> localhost:{mapping.host_port} (container :{mapping.container_port})"
        for mapping in environment.port_mappings
    ]


def _print_environment(environment: Environment) -> None:
    print(f"{environment.name} [{environment.status}] branch={environment.branch}")
    for line in _format_urls(environment):
        print(f"  {line}")


def _print_projects(projects: list[Project]) -> None:
    if not projects:
        print("No projects yet. Run `devenv create --repo PATH --branch NAME` to add one.")
        return
    for project in projects:
        print(f"{project.name} ({project.repo_path})")
        if not project.environments:
            print("  (no environments)")
        for environment in project.environments:
            urls = ", ".join(f"http://{mapping.hostname}" for mapping in environment.port_mappings)
            print(f"  {environment.name:<32} {environment.status:<8} {urls}".rstrip())


def _print_env_files(files: list[EnvFile]) -> None:
    if not files:
        print("No env files recorded.")
        return
    for env_file in files:
        print(f"# {env_file.relative_path}")
        print(env_file.content.rstrip("\n"))


async def _dispatch(args: argparse.Namespace) -> list[str] | None:
    """Run one command; returns a command line to hand the terminal to, if any."""
    async with open_reconciler() as reconciler:
        if args.command == "create":
            _print_environment(await reconciler.create(args.repo, args.branch))
        elif args.command == "branch":
            _print_environment(await reconciler.branch(args.environment, args.new_branch))
        elif args.command == "start":
            _print_environment(await reconciler.start(args.environment))
        elif args.command == "stop":
            _print_environment(await reconciler.stop(args.environment))
        elif args.command == "list":
            _print_projects(await reconciler.list())
        elif args.command == "remove":
            await reconciler.remove(args.environment, remove_worktree=args.worktree)
            print(f"Removed {args.environment}")
        elif args.command == "env" and args.env_command == "list":
            _print_env_files(await reconciler.list_env_files(args.environment))
        elif args.command == "env" and args.env_command == "set":
            env_file = await reconciler.set_env_var(args.environment, args.assignment)
            print(f"Updated {env_file.relative_path} for {args.environment}")
        elif args.command == "shell":
            command = await reconciler.shell_command(args.environment)
            print(f"Opening shell in {args.environment}...")
            return command
        elif args.command == "open":
            editor = "cursor" if args.cursor else "code"
            uri = await reconciler.editor_uri(args.environment)
            print(f"Opening {args.environment} in {'Cursor' if args.cursor else 'VS Code'}...")
            return [editor, "--folder-uri", uri]
        else:
            raise ValueError(f"Unsupported command: {args.command}")
    return None


async def _dispatch_config(args: argparse.Namespace) -> None:
    async with open_session() as session:
        if args.config_command == "set":
            await write_setting(session, args.key, args.value)
            print(f"Set {args.key}")
        elif args.config_command == "get":
            try:
                print((await read_setting(session, args.key)).value)
            except NotFoundError:
                print("(not set)")
        elif args.config_command == "delete":
            if await remove_setting(session, args.key):
                print(f"Deleted {args.key}")
            else:
                print(f'Setting "{args.key}" not found')
        elif args.config_command == "list":
            settings = await store.list_settings(session)
            if not settings:
                print("No settings configured")
            for setting in settings:
                print(f"{setting.key} = {setting.value}")
        else:
            raise ValueError(f"Unsupported config command: {args.config_command}")


def _run_attached(command: list[str]) -> int:
    try:
        return subprocess.run(command).returncode
    except FileNotFoundError as error:
        raise ExternalServiceError(f"{command[0]} is not installed or not on PATH", code="tool_missing") from error


def _serve(host: str, port: int) -> None:
    uvicorn.run("devenv.main:app", host=host, port=port)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devenv", description="Per-branch containerized dev environments")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create (or resume) the environment for a repo branch")
    create.add_argument("--repo", required=True, help="Path to the git repository")
    create.add_argument("--branch", required=True, help="Branch to check out")

    branch = subparsers.add_parser("branch", help="Create a new environment from an existing one")
    branch.add_argument("environment", help="Source environment name")
    branch.add_argument("new_branch", help="Branch for the new environment")

    for name, help_text in (
        ("start", "Start an environment"),
        ("stop", "Stop an environment"),
        ("shell", "Open an interactive shell in a running environment"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("environment", help="Environment name")

    open_parser = subparsers.add_parser("open", help="Open a running environment in VS Code or Cursor")
    open_parser.add_argument("environment", help="Environment name")
    open_parser.add_argument("--cursor", action="store_true", help="Use Cursor instead of VS Code")

    subparsers.add_parser("list", help="List projects and their environments")

    remove = subparsers.add_parser("remove", help="Remove an environment and its container")
    remove.add_argument("environment", help="Environment name")
    remove.add_argument("--worktree", action="store_true", help="Also remove the git worktree")

    env = subparsers.add_parser("env", help="Inspect or edit stored env files")
    env_subparsers = env.add_subparsers(dest="env_command", required=True)
    env_list = env_subparsers.add_parser("list", help="Show stored env files")
    env_list.add_argument("environment", help="Environment name")
    env_set = env_subparsers.add_parser("set", help="Set KEY=VALUE in the environment's .env")
    env_set.add_argument("environment", help="Environment name")
    env_set.add_argument("assignment", help="KEY=VALUE")

    config = subparsers.add_parser("config", help="Manage global settings")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    config_set = config_subparsers.add_parser("set", help="Store a setting")
    config_set.add_argument("key")
    config_set.add_argument("value")
    config_get = config_subparsers.add_parser("get", help="Retrieve a setting")
    config_get.add_argument("key")
    config_delete = config_subparsers.add_parser("delete", help="Remove a setting")
    config_delete.add_argument("key")
    config_subparsers.add_parser("list", help="Show all settings")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=resolve_api_port(), help="Bind port")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        _serve(args.host, args.port)
        return 0

    try:
        if args.command == "config":
            asyncio.run(_dispatch_config(args))
            return 0
        command = asyncio.run(_dispatch(args))
        if command:
            return _run_attached(command)
    except DevenvError as error:
        print(f"Error: {error.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
