"""Shared test fixtures for notifybot."""

from __future__ import annotations

import asyncio

import pytest

from notifybot.core.bus import EventBus
from notifybot.core.config import NotifyBotConfig
from notifybot.core.errors import DerivationError, PushError
from notifybot.ephemeral.derive import DerivedId, Deriver
from notifybot.ephemeral.scheme import EpochScheme
from notifybot.network.base import Hit, Host, NetworkClient, Topology
from notifybot.notifications.base import PushBackend
from notifybot.store.memory import memory_stores

NS = 1_000_000_000


class StubDeriver(Deriver):
    """Returns preset IDs; raises for identities listed in ``failing``."""

    def __init__(self, values: dict[bytes, int] | None = None) -> None:
        self.values = values or {}
        self.failing: set[bytes] = set()
        self.calls: list[bytes] = []

    def derive(self, identity_id: bytes, address_space_size: int, now_ns: int) -> DerivedId:
        self.calls.append(identity_id)
        if identity_id in self.failing:
            raise DerivationError(f"stub refuses {identity_id!r}")
        value = self.values.get(identity_id, int.from_bytes(identity_id[:4].ljust(4, b"\0"), "big"))
        return DerivedId(ephemeral_id=value, valid_from=now_ns, valid_to=now_ns + NS)


class FakePushBackend(PushBackend):
    """Records sends; tokens in ``failing_tokens`` are rejected."""

    def __init__(self, delay: float = 0.0) -> None:
        self.sent: list[tuple[str, bytes, bytes]] = []
        self.failing_tokens: set[str] = set()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def name(self) -> str:
        return "fake"

    async def send(self, token: str, message_hash: bytes, identity_fp: bytes) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if token in self.failing_tokens:
                raise PushError(f"token {token} rejected", backend=self.name)
            self.sent.append((token, message_hash, identity_fp))
            return f"ack-{len(self.sent)}"
        finally:
            self.in_flight -= 1


class ScriptedNetwork(NetworkClient):
    """
    Each request_hit_list() pops the next scripted item: an exception is
    raised, a list is returned. Once the script runs out, ``default`` is
    returned (or raised).
    """

    def __init__(self, script: list | None = None, default: object = None) -> None:
        self.script = list(script or [])
        self.default = [] if default is None else default
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.registered: list[Host] = []
        self.topology: Topology | None = None

    async def request_hit_list(self, host: Host) -> list[Hit]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        return list(item)

    async def fetch_topology(self, host: Host) -> Topology:
        if self.topology is None:
            raise ConnectionError("no topology scripted")
        return self.topology

    async def register_host(self, host_id: str, address: str, cert: str = "", **opts) -> Host:
        host = Host(id=host_id, address=address, cert=cert)
        self.registered.append(host)
        return host


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def config():
    """Default config without loading from disk."""
    return NotifyBotConfig()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def scheme():
    """Small scheme: 1024s period, 16 buckets of 64s."""
    return EpochScheme(period=1024, num_offsets=16, address_space_size=16)


@pytest.fixture
def stores(scheme):
    return memory_stores(scheme)


@pytest.fixture
def deriver():
    return StubDeriver()


@pytest.fixture
def push():
    return FakePushBackend()


@pytest.fixture
def network():
    return ScriptedNetwork()


@pytest.fixture
def topology():
    return Topology(gateways=(Host(id="gw-1", address="https://gw1.test"),))


def collect(bus: EventBus, event_type: str) -> list:
    """Subscribe to ``event_type`` and return the list events land in."""
    events = []

    async def handler(event):
        events.append(event)

    bus.on(event_type, handler)
    return events
