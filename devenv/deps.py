"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .core.caddy import CaddyClient
from .core.docker_client import DockerClient
from .core.git import GitWorktrees
from .core.ports import PortAllocator
from .core.reconciler import EnvironmentReconciler
from .core.routes import RouteSynchronizer
from .database import get_db

_DOCKER_CLIENT = DockerClient()
_GIT_WORKTREES = GitWorktrees()
_PORT_ALLOCATOR = PortAllocator()


def get_docker_client() -> DockerClient:
    return _DOCKER_CLIENT


def get_git_worktrees() -> GitWorktrees:
    return _GIT_WORKTREES


def get_port_allocator() -> PortAllocator:
    return _PORT_ALLOCATOR


def get_route_synchronizer() -> RouteSynchronizer:
    return RouteSynchronizer(CaddyClient())


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    runtime: DockerClient = Depends(get_docker_client),
    routes: RouteSynchronizer = Depends(get_route_synchronizer),
    worktrees: GitWorktrees = Depends(get_git_worktrees),
    allocator: PortAllocator = Depends(get_port_allocator),
) -> EnvironmentReconciler:
    return EnvironmentReconciler(
        db=db,
        runtime=runtime,
        routes=routes,
        worktrees=worktrees,
        allocator=allocator,
    )
