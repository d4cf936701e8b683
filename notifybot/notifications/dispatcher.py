"""
Dispatcher — turns a hit list into push sends.

Resolution:
    1. Parse every hit's ephemeral ID (decimal string, or base64 of the
       8-byte big-endian form). Unparseable IDs are skipped.
    2. One bulk read of the ephemerals table for all IDs, then one bulk read
       of the registrations they point at.
    3. One send per (hit, registration) match. Several registrations can
       share an ephemeral ID in the same epoch; each gets its own push.

Sends run concurrently, capped by a semaphore. A failed send is recorded in
the result and never stops the rest of the batch. IDs with no binding, or
bindings whose registration is gone, are background noise, not errors.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Iterable

from notifybot.core.bus import EventBus
from notifybot.core.events import Event, EventType
from notifybot.core.errors import PushError
from notifybot.network.base import Hit
from notifybot.notifications.base import PushBackend
from notifybot.store.base import EphemeralStore, RegistrationStore
from notifybot.store.models import Registration

logger = logging.getLogger(__name__)

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


def parse_ephemeral_id(raw: str) -> int | None:
    """Signed 64-bit ephemeral ID from its wire form, or None."""
    text = raw.strip()
    try:
        value = int(text, 10)
    except ValueError:
        pass
    else:
        return value if _INT64_MIN <= value <= _INT64_MAX else None
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(decoded) != 8:
        return None
    return int.from_bytes(decoded, "big", signed=True)


@dataclass
class SendOutcome:
    """Result of one push attempt."""

    ephemeral_id: int
    identity_hash: bytes
    token_prefix: str
    ok: bool
    ack: str = ""
    error: str = ""
    retryable: bool = False


@dataclass
class DispatchResult:
    """Aggregate of one dispatch call."""

    sent: int = 0
    failed: int = 0
    unmatched: int = 0  # parsed IDs with no live registration behind them
    skipped: int = 0  # IDs that could not be parsed
    outcomes: list[SendOutcome] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(registrations, ephemerals, FCMPushBackend(...))
        result = await dispatcher.dispatch(hits)
        print(result.sent, result.failed)
    """

    def __init__(
        self,
        registrations: RegistrationStore,
        ephemerals: EphemeralStore,
        backend: PushBackend,
        max_concurrency: int = 16,
        bus: EventBus | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._registrations = registrations
        self._ephemerals = ephemerals
        self._backend = backend
        self._max_concurrency = max_concurrency
        self._bus = bus

    @property
    def backend(self) -> PushBackend:
        return self._backend

    async def dispatch(self, hits: Iterable[Hit | str]) -> DispatchResult:
        """
        Send one push per matching registration. Storage failures while
        resolving propagate (the whole batch is retried next cycle); send
        failures never do.
        """
        result = DispatchResult()
        parsed: list[tuple[int, Hit]] = []
        for hit in hits:
            if isinstance(hit, str):
                hit = Hit(ephemeral_id=hit)
            eid = parse_ephemeral_id(hit.ephemeral_id)
            if eid is None:
                logger.debug(f"Skipping unparseable ephemeral ID {hit.ephemeral_id!r}")
                result.skipped += 1
                continue
            parsed.append((eid, hit))
        if not parsed:
            return result

        bindings = await self._ephemerals.get_bindings(eid for eid, _ in parsed)
        hashes = {b.identity_hash for found in bindings.values() for b in found}
        registrations = await self._registrations.get_registrations(hashes) if hashes else {}

        jobs: list[tuple[int, Hit, Registration]] = []
        for eid, hit in parsed:
            matched = False
            seen: set[bytes] = set()
            for binding in bindings.get(eid, []):
                reg = registrations.get(binding.identity_hash)
                if reg is None or reg.identity_hash in seen:
                    continue
                seen.add(reg.identity_hash)
                matched = True
                jobs.append((eid, hit, reg))
            if not matched:
                result.unmatched += 1

        semaphore = asyncio.Semaphore(self._max_concurrency)
        outcomes = await asyncio.gather(
            *(self._send(semaphore, eid, hit, reg) for eid, hit, reg in jobs)
        )
        for outcome in outcomes:
            result.outcomes.append(outcome)
            if outcome.ok:
                result.sent += 1
            else:
                result.failed += 1

        if jobs:
            logger.info(
                f"Dispatched {len(parsed)} hits: {result.sent} sent, {result.failed} failed, "
                f"{result.unmatched} unmatched"
            )
        if self._bus is not None:
            await self._bus.emit(Event(
                type=EventType.DISPATCH_COMPLETE,
                source="dispatcher",
                data={
                    "sent": result.sent,
                    "failed": result.failed,
                    "unmatched": result.unmatched,
                    "skipped": result.skipped,
                },
            ))
        return result

    async def _send(
        self,
        semaphore: asyncio.Semaphore,
        eid: int,
        hit: Hit,
        reg: Registration,
    ) -> SendOutcome:
        async with semaphore:
            try:
                ack = await self._backend.send(reg.token, hit.message_hash, hit.identity_fp)
            except PushError as e:
                logger.warning(
                    f"Push via {self._backend.name} failed for token {reg.token_prefix}: {e}"
                )
                return SendOutcome(eid, reg.identity_hash, reg.token_prefix, ok=False,
                                   error=str(e), retryable=e.retryable)
            except Exception as e:
                logger.warning(
                    f"Push via {self._backend.name} raised for token {reg.token_prefix}: {e}"
                )
                return SendOutcome(eid, reg.identity_hash, reg.token_prefix, ok=False,
                                   error=str(e), retryable=True)
        return SendOutcome(eid, reg.identity_hash, reg.token_prefix, ok=True, ack=ack)
