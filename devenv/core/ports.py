from __future__ import annotations

import asyncio
import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DEFAULT_CONTAINER_PORT, HOST_PORT_RANGE_END, LOCALHOST_SUFFIX, MAX_PORT_ALLOCATION_RETRIES
from ..models import PortMapping
from .. import store
from .errors import ConflictError, ExternalServiceError

logger = logging.getLogger(__name__)

_SLUG_INVALID = re.compile(r"[^a-z0-9-]")
_SLUG_DASHES = re.compile(r"-+")


def slugify(value: str) -> str:
    slug = _SLUG_INVALID.sub("-", (value or "").lower())
    slug = _SLUG_DASHES.sub("-", slug)
    return slug.strip("-")


def environment_name(project_name: str, branch: str) -> str:
    return f"{project_name}-{slugify(branch)}"


def generate_hostname(project_name: str, branch: str, port: int | None = None) -> str:
    port_suffix = f"-{port}" if port is not None and port != DEFAULT_CONTAINER_PORT else ""
    return f"{project_name}-{slugify(branch)}{port_suffix}{LOCALHOST_SUFFIX}"


class PortAllocator:
    """Hands out host ports from a single writer path.

    ``next_host_port`` is a plain read of the store maximum and is not safe to
    act on concurrently. ``allocate`` holds the allocator lock across
    read, insert and commit, so two operations sharing this allocator can never
    persist the same host port. Another process writing the same database is
    caught by the ``host_port`` unique constraint and retried.
    """

    def __init__(self, max_retries: int = MAX_PORT_ALLOCATION_RETRIES):
        self._lock = asyncio.Lock()
        self._max_retries = max_retries

    async def next_host_port(self, db: AsyncSession) -> int:
        return await store.get_next_available_host_port(db)

    async def allocate(
        self,
        db: AsyncSession,
        environment_id: int,
        container_port: int,
        hostname: str,
    ) -> PortMapping:
        async with self._lock:
            for attempt in range(self._max_retries):
                host_port = await store.get_next_available_host_port(db)
                if host_port > HOST_PORT_RANGE_END:
                    raise ExternalServiceError(
                        f"Host port range exhausted: next candidate {host_port} is above {HOST_PORT_RANGE_END}",
                        code="port_range_exhausted",
                    )
                try:
                    return await store.insert_port_mapping(
                        db,
                        environment_id=environment_id,
                        container_port=container_port,
                        host_port=host_port,
                        hostname=hostname,
                    )
                except IntegrityError as error:
                    await db.rollback()
                    if store.is_hostname_unique_violation(error):
                        raise ConflictError(
                            f"Hostname {hostname} is already assigned to another environment",
                            code="hostname_conflict",
                        ) from error
                    if not store.is_host_port_unique_violation(error):
                        raise
                    logger.warning(
                        "Host port %s was taken concurrently (attempt %s/%s); retrying",
                        host_port,
                        attempt + 1,
                        self._max_retries,
                    )

        raise ExternalServiceError(
            "Failed to allocate a unique host port after several retries. Please try again.",
            code="port_allocation_failed",
        )
