"""
TopologyAccessor — the one owned, swappable copy of the network definition.

Readers get whichever complete Topology was current when they asked; an
update swaps the reference under a lock, so a half-updated topology is never
observable. TopologyRefresher optionally re-fetches the definition from the
gateway and swaps it in when it changed.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from notifybot.core.errors import TopologyError
from notifybot.network.base import NetworkClient, Topology

logger = logging.getLogger(__name__)


class TopologyAccessor:
    """
    Usage:
        accessor = TopologyAccessor(initial_topology)
        host = accessor.current().gateway()
        accessor.update(new_topology)
    """

    def __init__(self, topology: Topology | None = None) -> None:
        self._lock = threading.Lock()
        self._topology = topology
        self._version = 0 if topology is None else 1

    def current(self) -> Topology:
        with self._lock:
            topology = self._topology
        if topology is None:
            raise TopologyError("No topology loaded yet")
        return topology

    def update(self, topology: Topology) -> bool:
        """Replace the topology. Returns False if it was identical."""
        if not isinstance(topology, Topology):
            raise TopologyError(f"Expected Topology, got {type(topology).__name__}")
        with self._lock:
            if self._topology is not None and self._topology.digest == topology.digest:
                return False
            self._topology = topology
            self._version += 1
            version = self._version
        logger.info(f"Topology updated to version {version} ({len(topology.gateways)} gateways)")
        return True

    @property
    def version(self) -> int:
        """Bumped on every effective update; 0 until the first one."""
        with self._lock:
            return self._version

    @property
    def loaded(self) -> bool:
        with self._lock:
            return self._topology is not None


class TopologyRefresher:
    """Periodically pulls the topology from the current gateway."""

    def __init__(
        self,
        accessor: TopologyAccessor,
        network: NetworkClient,
        interval: float = 300.0,
        gateway_id: str | None = None,
    ) -> None:
        self._accessor = accessor
        self._network = network
        self._interval = interval
        self._gateway_id = gateway_id
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    async def refresh(self) -> bool:
        """Fetch once; returns True if the topology changed."""
        host = self._accessor.current().gateway(self._gateway_id)
        topology = await self._network.fetch_topology(host)
        return self._accessor.update(topology)

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="topology-refresh")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh()
            except Exception as e:
                logger.warning(f"Topology refresh failed (keeping current): {e}")
