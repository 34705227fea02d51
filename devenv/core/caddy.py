from __future__ import annotations

import logging
import socket
from typing import Any

import httpx

from ..config import (
    CADDY_CONTAINER_NAME,
    CADDY_HOST_GATEWAY,
    CADDY_IMAGE,
    CADDY_SERVER_NAME,
    resolve_caddy_admin_url,
    resolve_caddy_timeout,
)
from .docker_client import DockerClient
from .errors import ContainerNotFoundError, ExternalServiceError, RouteNotFoundError, ValidationError

logger = logging.getLogger(__name__)

SERVER_CONFIG_PATH = f"/config/apps/http/servers/{CADDY_SERVER_NAME}"
ROUTES_PATH = f"{SERVER_CONFIG_PATH}/routes"


def _extract_error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text.strip() or f"HTTP {response.status_code}"


class CaddyClient:
    """Reverse-proxy gateway for the Caddy admin API.

    Only the raw primitives live here; ``RouteSynchronizer`` composes them into
    idempotent operations. A 404 raises ``RouteNotFoundError``; any other
    non-2xx raises ``ExternalServiceError`` with the upstream status.
    """

    def __init__(
        self,
        admin_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.admin_url = (admin_url or resolve_caddy_admin_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else resolve_caddy_timeout()
        self._transport = transport

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.admin_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if payload is None:
                    response = await client.request(method, url)
                else:
                    response = await client.request(method, url, json=payload)
        except httpx.HTTPError as error:
            raise ExternalServiceError(
                f"Caddy admin API unreachable ({method} {path}): {error}",
                code="proxy_unreachable",
            ) from error

        if response.status_code == 404:
            raise RouteNotFoundError(f"Not found in proxy config: {path}")
        if response.status_code >= 300:
            raise ExternalServiceError(
                f"Caddy admin API error ({method} {path}): {_extract_error_message(response)}",
                code="proxy_request_failed",
                upstream_status=response.status_code,
            )
        try:
            return response.json() if response.content else None
        except ValueError:
            return None

    async def get_server(self) -> dict[str, Any]:
        body = await self._request("GET", SERVER_CONFIG_PATH)
        if body is None:
            # Caddy answers a missing config path with 200 and a null body.
            raise RouteNotFoundError(f"Not found in proxy config: {SERVER_CONFIG_PATH}")
        return body

    async def put_server(self, config: dict[str, Any]) -> None:
        await self._request("PUT", SERVER_CONFIG_PATH, config)

    async def get_routes(self) -> list[dict[str, Any]]:
        body = await self._request("GET", ROUTES_PATH)
        return list(body or [])

    async def put_route(self, route_id: str, route: dict[str, Any]) -> None:
        await self._request("PUT", f"/id/{route_id}", route)

    async def post_route(self, route: dict[str, Any]) -> None:
        await self._request("POST", ROUTES_PATH, route)

    async def delete_route(self, route_id: str) -> None:
        await self._request("DELETE", f"/id/{route_id}")


def is_port_free_on_host(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("0.0.0.0", port))
            return True
        except OSError:
            return False


def ensure_proxy_running(runtime: DockerClient) -> None:
    """Make sure the Caddy container exists and is running. Blocking."""
    try:
        info = runtime.inspect(CADDY_CONTAINER_NAME)
        if not info.running:
            logger.info("Starting stopped proxy container %s", CADDY_CONTAINER_NAME)
            runtime.start(CADDY_CONTAINER_NAME)
        return
    except ContainerNotFoundError:
        pass

    if not is_port_free_on_host(80):
        raise ValidationError(
            "Port 80 is in use. Caddy needs port 80 for .localhost routing.",
            code="proxy_port_in_use",
        )

    logger.info("Creating proxy container %s from %s", CADDY_CONTAINER_NAME, CADDY_IMAGE)
    runtime.ensure_image(CADDY_IMAGE)
    # Empty config with the admin API reachable through the published port.
    runtime.create_container(
        name=CADDY_CONTAINER_NAME,
        image=CADDY_IMAGE,
        env_vars=["CADDY_ADMIN=0.0.0.0:2019"],
        cmd=["caddy", "run"],
        extra_hosts={CADDY_HOST_GATEWAY: "host-gateway"},
        port_bindings={80: 80, 2019: 2019},
        labels={"devenv.role": "caddy"},
    )
    runtime.start(CADDY_CONTAINER_NAME)
