"""
PollScheduler — the background asyncio task that polls for hits.

Design:
- One cycle every ``interval`` seconds: read the current topology, ask the
  gateway for its hit list, hand the hits to the Dispatcher
- A single task runs the cycles, so at most one poll is ever in flight
- A failed cycle (unreachable gateway, storage trouble while resolving)
  bumps a consecutive-failure counter; any successful cycle resets it to 0
- When the counter reaches ``max_consecutive_failures`` the loop reports a
  SchedulerFatalError exactly once (callback, ``fatal`` future, bus event)
  and exits
- stop() is cooperative: it wakes the inter-cycle wait immediately, lets an
  in-flight cycle finish, and no further cycle starts

States:
    IDLE → POLLING → DISPATCHING → IDLE
                   → BACKOFF     → IDLE
    any → STOPPED (via stop), BACKOFF → FAILED (budget exhausted)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable

from notifybot.core.bus import EventBus
from notifybot.core.errors import SchedulerFatalError
from notifybot.core.events import Event, EventType
from notifybot.network.base import NetworkClient
from notifybot.network.topology import TopologyAccessor
from notifybot.notifications.dispatcher import DispatchResult, Dispatcher

logger = logging.getLogger(__name__)

FatalCallback = Callable[[SchedulerFatalError], Any]


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    BACKOFF = "backoff"
    STOPPED = "stopped"
    FAILED = "failed"


class PollScheduler:
    """
    Usage:
        poller = PollScheduler(accessor, network, dispatcher,
                               interval=5, max_consecutive_failures=10,
                               on_fatal=alert_operator)
        await poller.start()
        error = await poller.fatal   # SchedulerFatalError, or None after stop()
    """

    def __init__(
        self,
        topology: TopologyAccessor,
        network: NetworkClient,
        dispatcher: Dispatcher,
        interval: float = 5.0,
        max_consecutive_failures: int = 10,
        gateway_id: str | None = None,
        on_fatal: FatalCallback | None = None,
        bus: EventBus | None = None,
    ) -> None:
        if max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1")
        self._topology = topology
        self._network = network
        self._dispatcher = dispatcher
        self._interval = interval
        self._max_failures = max_consecutive_failures
        self._gateway_id = gateway_id
        self._on_fatal = on_fatal
        self._bus = bus

        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._fatal: asyncio.Future | None = None
        self._state = PollState.IDLE
        self._failures = 0
        self.cycles = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._failures = 0
        self._state = PollState.IDLE
        self._fatal = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._loop(), name="poller")
        logger.info("PollScheduler started")

    async def stop(self) -> None:
        """Request a stop and wait for the loop to wind down."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("PollScheduler stopped")

    @property
    def fatal(self) -> asyncio.Future:
        """Resolves once: SchedulerFatalError on budget exhaustion, None on stop."""
        if self._fatal is None:
            raise RuntimeError("PollScheduler has not been started")
        return self._fatal

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    self._failures += 1
                    self._state = PollState.BACKOFF
                    logger.warning(
                        f"Poll cycle failed ({self._failures}/{self._max_failures}): {e}"
                    )
                    await self._emit(EventType.POLL_FAILED, {
                        "failures": self._failures, "error": str(e),
                    })
                    # A requested stop wins over a fatal report
                    if self._failures >= self._max_failures and not self._stop.is_set():
                        await self._report_fatal(e)
                        return
                else:
                    self._failures = 0
                    self._state = PollState.IDLE
                if await self._wait_for_stop():
                    break
            self._state = PollState.STOPPED
        finally:
            if self._fatal is not None and not self._fatal.done():
                self._fatal.set_result(None)

    async def run_cycle(self) -> DispatchResult:
        """One poll: topology → hit list → dispatch. Raises on failure."""
        self._state = PollState.POLLING
        host = self._topology.current().gateway(self._gateway_id)
        hits = await self._network.request_hit_list(host)
        self._state = PollState.DISPATCHING
        result = await self._dispatcher.dispatch(hits)
        self.cycles += 1
        logger.debug(f"Poll cycle {self.cycles}: {len(hits)} hits from {host.id}")
        await self._emit(EventType.POLL_SUCCEEDED, {
            "hits": len(hits), "sent": result.sent, "failed": result.failed,
        })
        return result

    async def _wait_for_stop(self) -> bool:
        """Sleep one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def _report_fatal(self, last_error: Exception) -> None:
        self._state = PollState.FAILED
        error = SchedulerFatalError(
            f"Polling stopped after {self._failures} consecutive failures: {last_error}",
            failures=self._failures,
            last_error=last_error,
        )
        logger.error(str(error))
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_result(error)
        await self._emit(EventType.SCHEDULER_FATAL, {
            "failures": self._failures, "error": str(last_error),
        })
        if self._on_fatal is not None:
            try:
                outcome = self._on_fatal(error)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Fatal-error callback raised: {e}")

    async def _emit(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, data=data, source="poller"))
