"""
Network primitives — hosts, topology, hits, and the NetworkClient interface.

The bot only needs three things from the routing network: the hit list
(which ephemeral IDs saw traffic), the current topology, and a way to
register a host it should talk to. Everything transport-specific lives
behind NetworkClient.
"""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from notifybot.core.errors import TopologyError


@dataclass(frozen=True)
class Host:
    """A network endpoint the bot can reach."""

    id: str
    address: str
    cert: str = ""  # PEM, or empty for the system trust store

    def to_dict(self) -> dict:
        return {"id": self.id, "address": self.address, "cert": self.cert}


@dataclass(frozen=True)
class Topology:
    """
    Immutable snapshot of the network definition.

    Replaced whole by TopologyAccessor.update(); never mutated in place.
    """

    gateways: tuple[Host, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def gateway(self, gateway_id: str | None = None) -> Host:
        """Return the named gateway, or the first one when no name is given."""
        if not self.gateways:
            raise TopologyError("Topology has no gateways")
        if gateway_id is None:
            return self.gateways[0]
        for host in self.gateways:
            if host.id == gateway_id:
                return host
        raise TopologyError(f"Gateway {gateway_id!r} not in topology")

    @property
    def digest(self) -> str:
        """Stable fingerprint, used to skip no-op topology updates."""
        body = json.dumps(
            {"gateways": [h.to_dict() for h in self.gateways], "extra": self.extra},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(body.encode()).hexdigest()

    @classmethod
    def from_dict(cls, d: dict) -> "Topology":
        try:
            gateways = tuple(
                Host(id=str(g["id"]), address=str(g["address"]), cert=g.get("cert", "") or "")
                for g in d.get("gateways", [])
            )
        except (KeyError, TypeError) as e:
            raise TopologyError(f"Malformed topology: {e}") from e
        extra = {k: v for k, v in d.items() if k != "gateways"}
        return cls(gateways=gateways, extra=extra)


@dataclass(frozen=True)
class Hit:
    """
    One entry of the hit list.

    ephemeral_id is kept as the raw string the network sent; the
    Dispatcher parses it. message_hash and identity_fp are opaque and only
    ever forwarded to the push backend.
    """

    ephemeral_id: str
    message_hash: bytes = b""
    identity_fp: bytes = b""


class NetworkClient(ABC):
    """
    Capability interface for talking to the network.

    Implementations:
        HttpNetworkClient — JSON over HTTP(S), default
        test fakes        — scripted results/failures
    """

    @abstractmethod
    async def request_hit_list(self, host: Host) -> list[Hit]:
        """Ephemeral IDs that received traffic since the last request."""
        ...

    @abstractmethod
    async def fetch_topology(self, host: Host) -> Topology:
        """Current network definition as seen by ``host``."""
        ...

    @abstractmethod
    async def register_host(self, host_id: str, address: str, cert: str = "", **opts: Any) -> Host:
        """Make a host known to the client and return it."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None
