"""Environment lifecycle: create, branch, start, stop and the bookkeeping around them.

The stored ``status`` and ``container_id`` are hints. Anything that depends on
whether a container is really running asks the runtime first and only then
acts. Nothing is rolled back on failure. Re-running an operation converges:
``create`` clears the environment's port mappings before allocating new ones.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CONTAINER_WORKSPACE_DIR, DEVENV_DIR, DEVENV_WORKTREES_DIR
from ..devcontainer.config_builder import ContainerSpec, build_container_spec
from ..devcontainer.parser import (
    DevcontainerConfig,
    find_devcontainer_config,
    resolve_forward_ports,
    resolve_remote_user,
)
from ..models import ENV_ERROR, ENV_RUNNING, ENV_STOPPED, EnvFile, Environment, Project
from .. import store
from .caddy import ensure_proxy_running
from .docker_client import DockerClient
from .envfiles import DEFAULT_ENV_FILE, discover_env_files, parse_env_content, set_env_value, split_assignment
from .errors import ConflictError, ContainerNotFoundError, ExternalServiceError, NotFoundError, ValidationError
from .git import GitWorktrees
from .ports import PortAllocator, environment_name, generate_hostname, slugify
from .routes import RouteSynchronizer

logger = logging.getLogger(__name__)


def worktree_path_for(repo_path: str | Path, branch: str) -> Path:
    return Path(repo_path) / DEVENV_DIR / DEVENV_WORKTREES_DIR / branch


def merge_env_files(contents: list[str]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for content in contents:
        merged.update(parse_env_content(content))
    return merged


class EnvironmentReconciler:
    """Drives one lifecycle operation against the store and the gateways.

    One instance is bound to one ``AsyncSession`` and must not be shared
    between concurrent operations. The ``PortAllocator`` is shared across
    instances as the single writer for host ports.
    """

    def __init__(
        self,
        db: AsyncSession,
        runtime: DockerClient,
        routes: RouteSynchronizer,
        worktrees: GitWorktrees,
        allocator: PortAllocator,
        ensure_proxy: Callable[[DockerClient], None] = ensure_proxy_running,
    ):
        self.db = db
        self.runtime = runtime
        self.routes = routes
        self.worktrees = worktrees
        self.allocator = allocator
        self._ensure_proxy = ensure_proxy

    async def _blocking(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(func, *args, **kwargs)

    # Lookups

    async def _require_environment(self, name: str) -> Environment:
        environment = await store.get_environment_by_name(self.db, name)
        if environment is None:
            raise NotFoundError(f"Environment not found: {name}", code="environment_not_found")
        return environment

    @staticmethod
    def _require_container(environment: Environment) -> str:
        if not environment.container_id:
            raise ValidationError(
                f"No container associated with environment: {environment.name}",
                code="container_missing",
            )
        return environment.container_id

    async def _is_container_running(self, container_id: str | None) -> bool:
        if not container_id:
            return False
        try:
            info = await self._blocking(self.runtime.inspect, container_id)
        except ContainerNotFoundError:
            return False
        return info.running

    async def _mark_error(self, environment_id: int) -> None:
        try:
            await store.update_environment_status(self.db, environment_id, ENV_ERROR)
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception("Failed to record error status for environment %s", environment_id)

    # Queries

    async def list(self) -> list[Project]:
        return await store.list_projects_with_environments(self.db)

    async def get(self, name: str) -> Environment:
        return await self._require_environment(name)

    async def list_env_files(self, name: str) -> list[EnvFile]:
        environment = await self._require_environment(name)
        return await store.get_env_files(self.db, environment.id)

    async def set_env_var(self, name: str, assignment: str) -> EnvFile:
        key, value = split_assignment(assignment)
        environment = await self._require_environment(name)
        files = await store.get_env_files(self.db, environment.id)
        current = next((item.content for item in files if item.relative_path == DEFAULT_ENV_FILE), "")
        await store.upsert_env_file(self.db, environment.id, DEFAULT_ENV_FILE, set_env_value(current, key, value))
        files = await store.get_env_files(self.db, environment.id)
        return next(item for item in files if item.relative_path == DEFAULT_ENV_FILE)

    async def list_branches(self, project_name: str) -> list[str]:
        project = await store.get_project_by_name(self.db, project_name)
        if project is None:
            raise NotFoundError(f"Project not found: {project_name}", code="project_not_found")
        return await self._blocking(self.worktrees.list_branches, project.repo_path)

    async def list_routes(self) -> list[dict[str, Any]]:
        return await self.routes.list_routes()

    # Attaching to a running environment

    async def _require_running(self, name: str) -> Environment:
        environment = await self._require_environment(name)
        if environment.status != ENV_RUNNING:
            raise ValidationError(
                f"Environment is not running (status: {environment.status}). "
                f"Start it first with: devenv start {name}",
                code="environment_not_running",
            )
        container_id = self._require_container(environment)
        if not await self._is_container_running(container_id):
            logger.warning("Environment %s is recorded as running but its container is not; marking stopped", name)
            await store.update_environment_status(self.db, environment.id, ENV_STOPPED)
            raise ValidationError(
                f"Container for {name} is not running. Start it first with: devenv start {name}",
                code="environment_not_running",
            )
        return environment

    async def _exec_output(self, container_id: str, script: str, user: str) -> str:
        exit_code, output = await self._blocking(self.runtime.exec, container_id, ["sh", "-c", script], user=user)
        return output.strip() if exit_code == 0 else ""

    async def shell_command(self, name: str) -> list[str]:
        """Build the ``docker exec`` command line for an interactive login shell.

        The shell runs as the descriptor's ``remoteUser``. ``docker exec`` leaves
        ``HOME`` unset, so it is resolved inside the container and passed along
        together with ``PATH`` (prefixed with ``$HOME/.local/bin``).
        """
        environment = await self._require_running(name)
        container_id = environment.container_id
        config: DevcontainerConfig | None = (
            json.loads(environment.runtime_config) if environment.runtime_config else None
        )
        user = resolve_remote_user(config)

        home = await self._exec_output(container_id, "echo ~", user)
        path = await self._exec_output(container_id, 'echo "$PATH"', user)

        command = ["docker", "exec", "-it", "--user", user]
        if home:
            command += ["-e", f"HOME={home}", "-e", f"PATH={home}/.local/bin:{path}"]
        command += ["-w", CONTAINER_WORKSPACE_DIR, container_id, "/bin/bash", "-l"]
        logger.info("Opening shell in %s as %s", name, user)
        return command

    async def editor_uri(self, name: str) -> str:
        environment = await self._require_running(name)
        encoded = environment.container_id.encode("utf-8").hex()
        return f"vscode-remote://attached-container+{encoded}{CONTAINER_WORKSPACE_DIR}"

    # Lifecycle

    async def create(self, repo_path: str | Path, branch: str) -> Environment:
        branch = (branch or "").strip()
        if not branch:
            raise ValidationError("A branch name is required", code="branch_required")

        repo = Path(repo_path).expanduser().resolve()
        if not await self._blocking(self.worktrees.is_git_repository, repo):
            raise ValidationError(f"Not a git repository: {repo}", code="not_a_git_repository")

        project_name = slugify(repo.name)
        if not project_name:
            raise ValidationError(f"Cannot derive a project name from {repo}", code="invalid_project_name")
        env_name = environment_name(project_name, branch)
        logger.info("Creating environment %s", env_name)

        environment = await store.get_environment_by_name(self.db, env_name)
        replace_container = False
        if environment is not None:
            if environment.status == ENV_RUNNING:
                if await self._is_container_running(environment.container_id):
                    raise ConflictError(
                        f'Environment "{env_name}" already exists and is running. Remove it first.',
                        code="environment_running",
                    )
                logger.warning(
                    "Environment %s is recorded as running but its container is not; marking stopped",
                    env_name,
                )
                await store.update_environment_status(self.db, environment.id, ENV_STOPPED)
            replace_container = True
            logger.info("Resuming setup for existing environment %s", env_name)

        project, created = await store.get_or_create_project(self.db, project_name, str(repo))
        if created:
            logger.info("Project created: %s", project_name)

        worktree_path = worktree_path_for(repo, branch)
        await self._blocking(self.worktrees.create_worktree, repo, branch, worktree_path)

        config = find_devcontainer_config(repo)
        if environment is None:
            try:
                environment = await store.insert_environment(
                    self.db,
                    project_id=project.id,
                    name=env_name,
                    branch=branch,
                    worktree_path=str(worktree_path),
                    runtime_config=json.dumps(config) if config is not None else None,
                )
            except IntegrityError as error:
                await self.db.rollback()
                if not store.is_environment_name_unique_violation(error):
                    raise
                # A concurrent create inserted the row first; resume on it.
                environment = await self._require_environment(env_name)
                replace_container = True

        environment_id = environment.id
        previous_container_id = environment.container_id
        env_files = await self._blocking(discover_env_files, repo)
        for env_file in env_files:
            await store.upsert_env_file(self.db, environment_id, env_file.relative_path, env_file.content)
        if env_files:
            logger.info("Discovered %s env file(s) for %s", len(env_files), env_name)

        return await self._provision(
            environment_id=environment_id,
            env_name=env_name,
            branch=branch,
            project_name=project_name,
            worktree_path=str(worktree_path),
            config=config,
            env_overrides=merge_env_files([item.content for item in env_files]),
            replace_container=replace_container,
            previous_container_id=previous_container_id,
        )

    async def branch(self, source_name: str, new_branch: str) -> Environment:
        new_branch = (new_branch or "").strip()
        if not new_branch:
            raise ValidationError("A branch name is required", code="branch_required")

        source = await self._require_environment(source_name)
        project = source.project
        if project is None:
            raise NotFoundError(f"Source project not found for {source_name}", code="project_not_found")

        project_name = project.name
        repo_path = project.repo_path
        source_id = source.id
        runtime_config = source.runtime_config
        new_name = environment_name(project_name, new_branch)
        if await store.get_environment_by_name(self.db, new_name) is not None:
            raise ConflictError(f"Environment already exists: {new_name}", code="environment_exists")

        logger.info("Creating environment %s from %s on branch %s", new_name, source_name, new_branch)
        worktree_path = worktree_path_for(repo_path, new_branch)
        await self._blocking(self.worktrees.create_worktree, repo_path, new_branch, worktree_path)

        try:
            new_environment = await store.insert_environment(
                self.db,
                project_id=project.id,
                name=new_name,
                branch=new_branch,
                worktree_path=str(worktree_path),
                runtime_config=runtime_config,
            )
        except IntegrityError as error:
            await self.db.rollback()
            if store.is_environment_name_unique_violation(error):
                raise ConflictError(f"Environment already exists: {new_name}", code="environment_exists") from error
            raise

        source_files = await store.get_env_files(self.db, source_id)
        copied = [(item.relative_path, item.content) for item in source_files]
        for relative_path, content in copied:
            await store.upsert_env_file(self.db, new_environment.id, relative_path, content)
        if copied:
            logger.info("Copied %s env file(s) from %s", len(copied), source_name)

        config: DevcontainerConfig | None = json.loads(runtime_config) if runtime_config else None
        return await self._provision(
            environment_id=new_environment.id,
            env_name=new_name,
            branch=new_branch,
            project_name=project_name,
            worktree_path=str(worktree_path),
            config=config,
            env_overrides=merge_env_files([content for _, content in copied]),
            replace_container=False,
        )

    async def start(self, name: str) -> Environment:
        environment = await self._require_environment(name)
        container_id = self._require_container(environment)
        environment_id = environment.id
        logger.info("Starting environment %s", name)

        try:
            await self._blocking(self.runtime.start, container_id)
        except ContainerNotFoundError as error:
            await self._mark_error(environment_id)
            raise ContainerNotFoundError(
                f"Container for {name} no longer exists. Recreate the environment with create.",
            ) from error
        except ExternalServiceError:
            logger.exception("Failed to start container for %s", name)
            await self._mark_error(environment_id)
            raise

        await store.update_environment_status(self.db, environment_id, ENV_RUNNING)
        await self._blocking(self._ensure_proxy, self.runtime)
        mappings = await store.get_port_mappings(self.db, environment_id)
        await self.routes.sync_routes(name, mappings)
        return await self._require_environment(name)

    async def stop(self, name: str) -> Environment:
        environment = await self._require_environment(name)
        container_id = self._require_container(environment)
        environment_id = environment.id
        logger.info("Stopping environment %s", name)

        try:
            await self._blocking(self.runtime.stop, container_id)
        except ContainerNotFoundError:
            logger.warning("Container for %s is already gone; marking stopped", name)
        except ExternalServiceError:
            logger.exception("Failed to stop container for %s", name)
            await self._mark_error(environment_id)
            raise

        await store.update_environment_status(self.db, environment_id, ENV_STOPPED)
        mappings = await store.get_port_mappings(self.db, environment_id)
        await self.routes.remove_routes(name, mappings)
        return await self._require_environment(name)

    async def remove(self, name: str, remove_worktree: bool = False) -> None:
        environment = await self._require_environment(name)
        environment_id = environment.id
        container_id = environment.container_id
        worktree_path = environment.worktree_path
        repo_path = environment.project.repo_path if environment.project is not None else None
        logger.info("Removing environment %s", name)

        await self.routes.remove_routes(name, list(environment.port_mappings))
        if container_id:
            try:
                await self._blocking(self.runtime.remove, container_id, force=True)
            except ContainerNotFoundError:
                logger.warning("Container for %s was already removed", name)

        await store.delete_port_mappings(self.db, environment_id)
        await store.delete_env_files(self.db, environment_id)
        await store.delete_environment(self.db, environment_id)

        if remove_worktree and worktree_path and repo_path:
            await self._blocking(self.worktrees.remove_worktree, repo_path, worktree_path)

    # Shared tail of create and branch

    async def _provision(
        self,
        *,
        environment_id: int,
        env_name: str,
        branch: str,
        project_name: str,
        worktree_path: str,
        config: DevcontainerConfig | None,
        env_overrides: dict[str, str],
        replace_container: bool,
        previous_container_id: str | None = None,
    ) -> Environment:
        try:
            await store.delete_port_mappings(self.db, environment_id)

            port_bindings: dict[int, int] = {}
            for container_port in resolve_forward_ports(config):
                hostname = generate_hostname(project_name, branch, container_port)
                mapping = await self.allocator.allocate(self.db, environment_id, container_port, hostname)
                port_bindings[container_port] = mapping.host_port

            spec = build_container_spec(
                config,
                project_name=project_name,
                environment_name=env_name,
                workspace_dir=worktree_path,
                port_bindings=port_bindings,
                env_overrides=env_overrides,
            )
            container_id = await self._launch_container(spec, replace_container, previous_container_id)
            await store.update_environment_container(self.db, environment_id, container_id)
            await self._run_post_create(container_id, spec)

            await self._blocking(self._ensure_proxy, self.runtime)
            mappings = await store.get_port_mappings(self.db, environment_id)
            await self.routes.sync_routes(env_name, mappings)
            await store.update_environment_status(self.db, environment_id, ENV_RUNNING)
        except (ExternalServiceError, NotFoundError):
            logger.exception("Provisioning failed for environment %s", env_name)
            await self._mark_error(environment_id)
            raise

        environment = await self._require_environment(env_name)
        logger.info(
            "Environment %s is running: %s",
            env_name,
            ", ".join(f"http://{item.hostname} -> :{item.container_port}" for item in environment.port_mappings),
        )
        return environment

    async def _launch_container(
        self,
        spec: ContainerSpec,
        replace_container: bool,
        previous_container_id: str | None,
    ) -> str:
        await self._blocking(self.runtime.ensure_image, spec.image)

        if replace_container:
            # The recorded id and the deterministic name may point at different containers.
            for target in dict.fromkeys(item for item in (previous_container_id, spec.name) if item):
                try:
                    await self._blocking(self.runtime.remove, target, force=True)
                    logger.info("Removed previous container %s for environment %s", target, spec.name)
                except ContainerNotFoundError:
                    pass

        container_id = await self._blocking(
            self.runtime.create_container,
            name=spec.name,
            image=spec.image,
            workspace_dir=spec.workspace_dir,
            env_vars=spec.env_list,
            labels=spec.labels,
            port_bindings=spec.port_bindings,
        )
        await self._blocking(self.runtime.start, container_id)
        return container_id

    async def _run_post_create(self, container_id: str, spec: ContainerSpec) -> None:
        if not spec.post_create_command:
            return
        logger.info("Running postCreateCommand for %s", spec.name)
        exit_code, output = await self._blocking(
            self.runtime.exec, container_id, ["sh", "-c", spec.post_create_command]
        )
        if exit_code != 0:
            raise ExternalServiceError(
                f"postCreateCommand failed for {spec.name} (exit code {exit_code}): {output.strip()}",
                code="post_create_failed",
            )
