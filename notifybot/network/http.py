"""
HttpNetworkClient — talks to gateways as JSON over HTTP(S).

Endpoints (relative to the host address):
    GET  /notifications   → {"ids": ["123", ...]}
                          or {"notifications": [{"ephemeral_id": "123",
                              "message_hash": "<b64>", "identity_fp": "<b64>"}]}
    GET  /topology        → {"gateways": [{"id": ..., "address": ..., "cert": ...}], ...}

Hosts with a PEM cert get their own TLS context; everything else uses the
system trust store (or no verification when verify=False).
"""

from __future__ import annotations

import base64
import binascii
import logging
import ssl
from typing import Any

import httpx

from notifybot.core.errors import NetworkError
from notifybot.network.base import Hit, Host, NetworkClient, Topology

logger = logging.getLogger(__name__)


class HttpNetworkClient(NetworkClient):
    """
    Usage:
        client = HttpNetworkClient(timeout=30)
        gw = await client.register_host("gw-1", "https://gw1.example:8443")
        hits = await client.request_hit_list(gw)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._verify = verify
        self._transport = transport
        self._hosts: dict[str, Host] = {}
        self._clients: dict[str, httpx.AsyncClient] = {}

    async def register_host(self, host_id: str, address: str, cert: str = "", **opts: Any) -> Host:
        if not host_id or not address:
            raise NetworkError("Host id and address are required", host=host_id, retryable=False)
        host = Host(id=host_id, address=address.rstrip("/"), cert=cert)
        previous = self._hosts.get(host_id)
        self._hosts[host_id] = host
        if previous is not None and previous != host:
            stale = self._clients.pop(host_id, None)
            if stale is not None:
                await stale.aclose()
        logger.debug(f"Registered host {host_id} at {host.address}")
        return host

    async def request_hit_list(self, host: Host) -> list[Hit]:
        body = await self._get_json(host, "/notifications")
        if "notifications" in body:
            return [_parse_hit(entry, host) for entry in body["notifications"]]
        ids = body.get("ids")
        if not isinstance(ids, list):
            raise NetworkError("Hit list response has no ids", host=host.id)
        return [Hit(ephemeral_id=str(i)) for i in ids]

    async def fetch_topology(self, host: Host) -> Topology:
        body = await self._get_json(host, "/topology")
        return Topology.from_dict(body)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _client_for(self, host: Host) -> httpx.AsyncClient:
        client = self._clients.get(host.id)
        if client is None:
            verify: bool | ssl.SSLContext = self._verify
            if host.cert and self._verify:
                verify = ssl.create_default_context(cadata=host.cert)
            client = httpx.AsyncClient(
                base_url=host.address,
                timeout=self._timeout,
                verify=verify,
                transport=self._transport,
            )
            self._clients[host.id] = client
        return client

    async def _get_json(self, host: Host, path: str) -> dict:
        try:
            resp = await self._client_for(host).get(path)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise NetworkError(
                f"{host.id} answered {status} for {path}",
                host=host.id,
                retryable=status >= 500 or status == 429,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{host.id} unreachable: {e}", host=host.id) from e
        except ValueError as e:
            raise NetworkError(f"{host.id} sent invalid JSON for {path}", host=host.id) from e
        if not isinstance(body, dict):
            raise NetworkError(f"{host.id} sent a non-object for {path}", host=host.id)
        return body


def _parse_hit(entry: Any, host: Host) -> Hit:
    if not isinstance(entry, dict) or "ephemeral_id" not in entry:
        raise NetworkError(f"Malformed hit from {host.id}: {entry!r}", host=host.id)
    try:
        return Hit(
            ephemeral_id=str(entry["ephemeral_id"]),
            message_hash=base64.b64decode(entry.get("message_hash") or ""),
            identity_fp=base64.b64decode(entry.get("identity_fp") or ""),
        )
    except (binascii.Error, ValueError) as e:
        raise NetworkError(f"Malformed hit metadata from {host.id}: {e}", host=host.id) from e
