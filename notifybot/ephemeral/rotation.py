"""
RotationManager — keeps every registration bound to its current ephemeral ID.

Design:
- Ticks every ``interval`` seconds as its own asyncio task, independent of
  the poll loop
- Each tick rotates only the offset buckets whose epoch boundary elapsed
  since the previous tick, so the derivation work is spread over the period
- The first tick after start is a catch-up: any registration without a
  binding for its current epoch is bound, covering downtime
- A derivation failure skips that one registration; it is queued and retried
  on the next tick
- Every ``purge_interval`` seconds bindings below the retention floor are
  swept, which also reclaims bindings orphaned by unregistration

This is the only writer of the ephemerals table.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from notifybot.core.bus import EventBus
from notifybot.core.events import Event, EventType
from notifybot.ephemeral.derive import Deriver
from notifybot.ephemeral.scheme import EpochScheme
from notifybot.store.base import EphemeralStore, RegistrationStore
from notifybot.store.models import EphemeralBinding, Registration

logger = logging.getLogger(__name__)


@dataclass
class RotationReport:
    """What one rotation pass did."""

    buckets: list[int] = field(default_factory=list)
    rotated: int = 0
    failures: dict[bytes, str] = field(default_factory=dict)  # identity_hash → error
    purged: int = 0


class RotationManager:
    """
    Usage:
        manager = RotationManager(registrations, ephemerals, scheme, deriver)
        await manager.start()
        ...
        await manager.stop()

    Or drive it by hand (tests, one-off CLI runs):
        report = await manager.tick(now_ns=...)
    """

    def __init__(
        self,
        registrations: RegistrationStore,
        ephemerals: EphemeralStore,
        scheme: EpochScheme,
        deriver: Deriver,
        interval: float = 10.0,
        retained_epochs: int = 1,
        purge_interval: float = 600.0,
        bus: EventBus | None = None,
    ) -> None:
        self._registrations = registrations
        self._ephemerals = ephemerals
        self._scheme = scheme
        self._deriver = deriver
        self._interval = interval
        self._retained_epochs = retained_epochs
        self._purge_interval_ns = int(purge_interval * 1_000_000_000)
        self._bus = bus
        self._last_tick_ns: int | None = None
        self._last_purge_ns: int | None = None
        self._retry: set[bytes] = set()
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background rotation loop."""
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="rotation")
        logger.info("RotationManager started")

    async def stop(self) -> None:
        """Stop after the current tick; never interrupts a tick midway."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("RotationManager stopped")

    @property
    def pending_retries(self) -> int:
        return len(self._retry)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"Rotation tick error (non-fatal): {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    # ── Rotation ──────────────────────────────────────────────────────────────

    async def tick(self, now_ns: int | None = None) -> RotationReport:
        """Rotate due buckets, retry earlier failures, purge if due."""
        now_ns = now_ns if now_ns is not None else time.time_ns()
        if self._last_tick_ns is None:
            report = await self.catch_up(now_ns)
        else:
            buckets = self._scheme.buckets_rolled(self._last_tick_ns, now_ns)
            due = await self._registrations.list_registrations(offset_buckets=buckets) if buckets else []
            if self._retry:
                retry = await self._registrations.get_registrations(self._retry)
                self._retry.clear()
                seen = {r.identity_hash for r in due}
                due.extend(r for h, r in retry.items() if h not in seen)
            report = await self._rotate(due, now_ns)
            report.buckets = buckets
        self._last_tick_ns = now_ns

        if self._last_purge_ns is None or now_ns - self._last_purge_ns >= self._purge_interval_ns:
            report.purged = await self.purge_expired(now_ns)
            self._last_purge_ns = now_ns

        if report.rotated or report.failures:
            logger.info(
                f"Rotated {report.rotated} ephemeral IDs across {len(report.buckets)} buckets "
                f"({len(report.failures)} failed)"
            )
            await self._emit(EventType.ROTATION_COMPLETE, {
                "buckets": len(report.buckets),
                "rotated": report.rotated,
                "failed": len(report.failures),
            })
        return report

    async def catch_up(self, now_ns: int | None = None) -> RotationReport:
        """Bind every registration that lacks a binding for its current epoch."""
        now_ns = now_ns if now_ns is not None else time.time_ns()
        registrations = await self._registrations.list_registrations()
        # Bucket epochs are the global epoch or the one before it
        floor = self._scheme.global_epoch(now_ns) - 1
        bound = {
            (b.identity_hash, b.epoch)
            for b in await self._ephemerals.list_bindings(min_epoch=floor)
        }
        missing = [
            r for r in registrations
            if (r.identity_hash, self._scheme.epoch(r.offset_bucket, now_ns)) not in bound
        ]
        report = await self._rotate(missing, now_ns)
        report.buckets = sorted({r.offset_bucket for r in missing})
        return report

    async def rotate_registration(self, registration: Registration, now_ns: int | None = None) -> EphemeralBinding | None:
        """Bind one registration now (used right after it registers)."""
        now_ns = now_ns if now_ns is not None else time.time_ns()
        report = await self._rotate([registration], now_ns)
        if report.failures:
            return None
        epoch = self._scheme.epoch(registration.offset_bucket, now_ns)
        bindings = await self._ephemerals.list_bindings(
            identity_hash=registration.identity_hash, min_epoch=epoch
        )
        return next((b for b in bindings if b.epoch == epoch), None)

    async def _rotate(self, registrations: list[Registration], now_ns: int) -> RotationReport:
        report = RotationReport()
        bindings: list[EphemeralBinding] = []
        for reg in registrations:
            try:
                derived = self._deriver.derive(
                    reg.identity_id, self._scheme.address_space_size, now_ns
                )
            except Exception as e:
                logger.warning(f"Ephemeral derivation failed for {reg.identity_hash.hex()[:12]}: {e}")
                report.failures[reg.identity_hash] = str(e)
                self._retry.add(reg.identity_hash)
                continue
            bindings.append(EphemeralBinding(
                identity_hash=reg.identity_hash,
                ephemeral_id=derived.ephemeral_id,
                epoch=self._scheme.epoch(reg.offset_bucket, now_ns),
                offset_bucket=reg.offset_bucket,
            ))
        if bindings:
            try:
                await self._ephemerals.upsert_bindings(bindings)
            except Exception:
                # Whole batch missed this tick, retry all of it next time
                self._retry.update(b.identity_hash for b in bindings)
                raise
        report.rotated = len(bindings)
        return report

    # ── Sweep ─────────────────────────────────────────────────────────────────

    def retention_floor(self, now_ns: int | None = None) -> int:
        now_ns = now_ns if now_ns is not None else time.time_ns()
        return self._scheme.retention_floor(now_ns, self._retained_epochs)

    async def purge_epochs_below(self, floor_epoch: int) -> int:
        """Delete all bindings with epoch < floor_epoch."""
        deleted = await self._ephemerals.purge_epochs_below(floor_epoch)
        if deleted:
            logger.info(f"Purged {deleted} ephemeral bindings below epoch {floor_epoch}")
            await self._emit(EventType.ROTATION_PURGED, {"floor": floor_epoch, "deleted": deleted})
        return deleted

    async def purge_expired(self, now_ns: int | None = None) -> int:
        return await self.purge_epochs_below(self.retention_floor(now_ns))

    async def _emit(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, data=data, source="rotation"))
