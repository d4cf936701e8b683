"""
NotificationBot — composes the stores, rotation, dispatch and polling into
one running service, and exposes the registration RPC surface.

The transport that terminates RPCs authenticates the caller and hands over
an AuthContext; the bot only checks the flag and the presented keys.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from notifybot.core.bus import EventBus
from notifybot.core.config import NotifyBotConfig
from notifybot.core.errors import (
    AuthenticationError,
    ConfigError,
    InvalidInputError,
    SchedulerFatalError,
)
from notifybot.core.events import Event, EventType
from notifybot.ephemeral.derive import Deriver, HashDeriver
from notifybot.ephemeral.rotation import RotationManager
from notifybot.ephemeral.scheme import EpochScheme, identity_hash
from notifybot.network.base import NetworkClient, Topology
from notifybot.network.http import HttpNetworkClient
from notifybot.network.topology import TopologyAccessor, TopologyRefresher
from notifybot.notifications.backends.fcm import FCMPushBackend, load_service_account
from notifybot.notifications.backends.file import FilePushBackend
from notifybot.notifications.base import PushBackend
from notifybot.notifications.dispatcher import Dispatcher
from notifybot.scheduler.poller import PollScheduler
from notifybot.store.base import EphemeralStore, RegistrationStore
from notifybot.store.memory import memory_stores
from notifybot.store.models import Registration
from notifybot.store.sqlite import sqlite_stores

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Identity of an RPC caller as verified by the transport."""

    is_authenticated: bool
    identity_id: bytes = b""
    public_key: bytes = b""
    signature: bytes = b""


def build_scheme(config: NotifyBotConfig) -> EpochScheme:
    return EpochScheme(
        period=config.rotation.period,
        num_offsets=config.rotation.num_offsets,
        address_space_size=config.rotation.address_space_size,
    )


def build_push_backend(config: NotifyBotConfig) -> PushBackend:
    push = config.push
    if push.backend == "file":
        return FilePushBackend(Path(push.log_path))
    if push.backend == "fcm":
        if not push.configured:
            raise ConfigError(
                "push.backend is 'fcm' but neither credentials_file nor project_id/access_token is set"
            )
        credentials = load_service_account(push.credentials_file) if push.credentials_file else None
        backend = FCMPushBackend(
            project_id=push.project_id,
            access_token=push.access_token,
            endpoint=push.endpoint,
            timeout=push.timeout,
            credentials=credentials,
        )
        if not backend.configured:
            raise ConfigError("FCM project_id is missing from config and the service account")
        return backend
    raise ConfigError(f"Unknown push backend {push.backend!r}")


class NotificationBot:
    """
    Usage:
        bot = await NotificationBot.from_config(NotifyBotConfig.load())
        await bot.start()
        error = await bot.wait_fatal()   # blocks until fatal or stop()
        await bot.stop()
    """

    def __init__(
        self,
        config: NotifyBotConfig,
        registrations: RegistrationStore,
        ephemerals: EphemeralStore,
        network: NetworkClient,
        push: PushBackend,
        scheme: EpochScheme | None = None,
        deriver: Deriver | None = None,
        topology: Topology | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self.scheme = scheme or build_scheme(config)
        self.registrations = registrations
        self.ephemerals = ephemerals
        self.network = network
        self.push = push
        self.topology = TopologyAccessor(topology)

        self.rotation = RotationManager(
            registrations,
            ephemerals,
            self.scheme,
            deriver or HashDeriver(self.scheme, config.rotation.derivation_key.encode()),
            interval=config.rotation.interval,
            retained_epochs=config.rotation.retained_epochs,
            purge_interval=config.rotation.purge_interval,
            bus=self.bus,
        )
        self.dispatcher = Dispatcher(
            registrations,
            ephemerals,
            push,
            max_concurrency=config.dispatch.max_concurrency,
            bus=self.bus,
        )
        self.poller = PollScheduler(
            self.topology,
            network,
            self.dispatcher,
            interval=config.poll.interval,
            max_consecutive_failures=config.poll.max_consecutive_failures,
            gateway_id=config.poll.gateway_id,
            bus=self.bus,
        )
        self.refresher: TopologyRefresher | None = None
        if config.network.topology_refresh_interval > 0:
            self.refresher = TopologyRefresher(
                self.topology,
                network,
                interval=config.network.topology_refresh_interval,
                gateway_id=config.poll.gateway_id,
            )
        self._running = False

    @classmethod
    async def from_config(cls, config: NotifyBotConfig) -> "NotificationBot":
        """Build production collaborators from config."""
        scheme = build_scheme(config)
        if config.storage.backend == "memory":
            registrations, ephemerals = memory_stores(scheme)
        else:
            registrations, ephemerals = await sqlite_stores(config.storage.path, scheme)

        network = HttpNetworkClient(timeout=config.network.timeout, verify=config.network.verify)
        gateways = [
            await network.register_host(g.id, g.address, g.cert)
            for g in config.network.gateways
        ]
        topology = Topology(gateways=tuple(gateways)) if gateways else None
        return cls(
            config,
            registrations,
            ephemerals,
            network,
            build_push_backend(config),
            scheme=scheme,
            topology=topology,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("notifybot starting")
        await self.bus.emit(Event(type=EventType.SYSTEM_START, source="bot"))
        await self.rotation.start()
        await self.poller.start()
        if self.refresher is not None:
            await self.refresher.start()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info("notifybot stopping")
        await self.poller.stop()
        await self.rotation.stop()
        if self.refresher is not None:
            await self.refresher.stop()
        await self.network.close()
        await self.push.close()
        await self.registrations.close()
        await self.ephemerals.close()
        await self.bus.emit(Event(type=EventType.SYSTEM_STOP, source="bot"))

    async def wait_fatal(self) -> SchedulerFatalError | None:
        """Wait for the poll loop to end: its fatal error, or None if stopped."""
        return await asyncio.shield(self.poller.fatal)

    @property
    def running(self) -> bool:
        return self._running

    # ── RPC surface ───────────────────────────────────────────────────────────

    async def register_for_notifications(self, token: bytes, auth: AuthContext | None) -> Registration:
        """
        Register (or re-register) the caller's device token.

        Raises AuthenticationError, InvalidInputError or StorageError.
        """
        _require_auth(auth)
        push_token = _decode_token(token)
        reg = await self.registrations.upsert_registration(
            auth.identity_id, auth.public_key, auth.signature, push_token
        )
        logger.info(f"Registered {reg.identity_hash.hex()[:12]} (token {reg.token_prefix})")
        try:
            await self.rotation.rotate_registration(reg)
        except Exception as e:
            # Registration stands; the rotation retry queue picks it up
            logger.warning(f"Initial ephemeral binding failed for {reg.identity_hash.hex()[:12]}: {e}")
        await self.bus.emit(Event(
            type=EventType.REGISTRATION_ADDED,
            source="bot",
            data={"identity_hash": reg.identity_hash.hex(), "offset_bucket": reg.offset_bucket},
        ))
        return reg

    async def unregister_for_notifications(self, auth: AuthContext | None) -> None:
        """
        Remove the caller's registration. Its bindings are left for the
        epoch sweep. Raises NotFoundError if the caller never registered.
        """
        _require_auth(auth)
        if not auth.public_key:
            raise InvalidInputError("public key is empty")
        h = identity_hash(auth.public_key)
        await self.registrations.delete_registration(h)
        logger.info(f"Unregistered {h.hex()[:12]}")
        await self.bus.emit(Event(
            type=EventType.REGISTRATION_REMOVED, source="bot", data={"identity_hash": h.hex()},
        ))

    async def update_topology(self, topology: Topology) -> bool:
        """Swap in a new network definition. Returns False if unchanged."""
        changed = self.topology.update(topology)
        for host in topology.gateways:
            await self.network.register_host(host.id, host.address, host.cert)
        if changed:
            await self.bus.emit(Event(
                type=EventType.TOPOLOGY_UPDATED,
                source="bot",
                data={"version": self.topology.version, "gateways": len(topology.gateways)},
            ))
        return changed


def _require_auth(auth: AuthContext | None) -> None:
    if auth is None or not auth.is_authenticated:
        raise AuthenticationError("Caller identity is not authenticated")


def _decode_token(token: bytes) -> str:
    try:
        text = token.decode("utf-8").strip()
    except (UnicodeDecodeError, AttributeError) as e:
        raise InvalidInputError(f"Push token is not valid UTF-8: {e}") from e
    if not text:
        raise InvalidInputError("Push token is empty")
    return text
