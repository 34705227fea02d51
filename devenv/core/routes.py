"""Idempotent route management on top of the Caddy admin primitives.

The admin API has no upsert: ``PUT /id/{id}`` only touches an object that is
already registered, and ``POST`` on the route collection always appends. The
synchronizer combines the two so that "set route X to exactly this value" can
be repeated safely. All writes for one environment go through the shared
route collection, so they are issued one at a time.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from ..config import CADDY_HOST_GATEWAY, ROUTE_ID_PREFIX
from .caddy import CaddyClient
from .errors import ExternalServiceError, RouteNotFoundError

logger = logging.getLogger(__name__)


class RouteTarget(Protocol):
    container_port: int
    host_port: int
    hostname: str


def format_route_id(environment_name: str, container_port: int) -> str:
    return f"{ROUTE_ID_PREFIX}-{environment_name}-{container_port}"


def build_route(route_id: str, hostname: str, host_port: int) -> dict[str, Any]:
    return {
        "@id": route_id,
        "match": [{"host": [hostname]}],
        "handle": [
            {
                "handler": "reverse_proxy",
                "upstreams": [{"dial": f"{CADDY_HOST_GATEWAY}:{host_port}"}],
            }
        ],
    }


def _is_already_exists(error: ExternalServiceError) -> bool:
    return error.upstream_status == 409 or "already exists" in error.message.lower()


def _unexpected_not_found(action: str, error: RouteNotFoundError) -> ExternalServiceError:
    return ExternalServiceError(
        f"Caddy admin API could not {action}: {error.message}",
        code="proxy_request_failed",
        upstream_status=404,
    )


class RouteSynchronizer:
    def __init__(self, proxy: CaddyClient):
        self.proxy = proxy

    async def ensure_collection(self) -> None:
        try:
            await self.proxy.get_server()
            return
        except RouteNotFoundError:
            pass

        try:
            await self.proxy.put_server({"listen": [":80"], "routes": []})
        except RouteNotFoundError as error:
            raise _unexpected_not_found("create the proxy server config", error) from error
        except ExternalServiceError as error:
            if not _is_already_exists(error):
                raise
            logger.info("Proxy server config was created concurrently; continuing")

    async def upsert_route(self, route_id: str, hostname: str, host_port: int) -> None:
        await self.ensure_collection()
        route = build_route(route_id, hostname, host_port)
        try:
            await self.proxy.put_route(route_id, route)
            return
        except RouteNotFoundError:
            pass
        try:
            await self.proxy.post_route(route)
        except RouteNotFoundError as error:
            raise _unexpected_not_found(f"add route {route_id}", error) from error

    async def remove_route(self, route_id: str) -> None:
        try:
            await self.proxy.delete_route(route_id)
        except RouteNotFoundError:
            logger.info("Route %s already absent", route_id)

    async def sync_routes(self, environment_name: str, mappings: Iterable[RouteTarget]) -> list[str]:
        route_ids = []
        for mapping in mappings:
            route_id = format_route_id(environment_name, mapping.container_port)
            await self.upsert_route(route_id, mapping.hostname, mapping.host_port)
            route_ids.append(route_id)
        return route_ids

    async def remove_routes(self, environment_name: str, mappings: Iterable[RouteTarget]) -> list[str]:
        route_ids = []
        for mapping in mappings:
            route_id = format_route_id(environment_name, mapping.container_port)
            await self.remove_route(route_id)
            route_ids.append(route_id)
        return route_ids

    async def list_routes(self) -> list[dict[str, Any]]:
        try:
            return await self.proxy.get_routes()
        except RouteNotFoundError:
            return []
