"""
Sync scheduler -- decides when to call ``sync_now``.

Triggers:
    - startup
    - local changes, debounced by a quiet period
    - a periodic timer
    - retries after failure, with exponential backoff

Automatic triggers respect a minimum interval since the last success;
manual syncs ignore it. All timing goes through a ``Clock`` so tests can
move time forward without sleeping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from .errors import SyncError
from .models import SyncEvent, SyncEventKind, SyncResult

if TYPE_CHECKING:
    from .orchestrator import SyncOrchestrator

logger = logging.getLogger("flowsync.scheduler")

DEBOUNCE_SECONDS = 3.0
MIN_SYNC_INTERVAL_SECONDS = 30.0
PERIODIC_SECONDS = 15 * 60.0
INITIAL_BACKOFF_SECONDS = 60.0
MAX_BACKOFF_SECONDS = 60 * 60.0


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class Clock(ABC):
    """Monotonic time source."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a clock that never goes backwards."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Wait for ``seconds`` on this clock."""


class SystemClock(Clock):
    """Real time."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def monotonic(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class Debouncer:
    """Quiet-period timer: every poke pushes the deadline out again.

    Args:
        clock: Time source.
        delay: Quiet period in seconds.
    """

    def __init__(self, clock: Clock, delay: float = DEBOUNCE_SECONDS) -> None:
        self._clock = clock
        self.delay = delay
        self.deadline: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self.deadline is not None

    def poke(self, delay: Optional[float] = None) -> None:
        self.deadline = self._clock.monotonic() + (
            self.delay if delay is None else delay
        )

    def cancel(self) -> None:
        self.deadline = None

    def fire_if_due(self) -> bool:
        """Consume the timer if its quiet period has elapsed."""
        if self.deadline is None or self._clock.monotonic() < self.deadline:
            return False
        self.deadline = None
        return True


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class TriggerReason(str, Enum):
    """Why a sync was requested."""

    STARTUP = "startup"
    PERIODIC = "periodic"
    STATE_CHANGE = "state_change"
    RETRY = "retry"
    MANUAL = "manual"


class SyncScheduler:
    """Background trigger logic around a ``SyncOrchestrator``.

    Args:
        orchestrator: The orchestrator to drive.
        clock: Time source. Defaults to ``SystemClock()``.
        debounce: Quiet period after a local change.
        min_interval: Minimum gap after a successful sync for automatic runs.
        period: Periodic sync interval.
        initial_backoff: First retry delay after a failure.
        max_backoff: Retry delay cap.
    """

    def __init__(
        self,
        orchestrator: "SyncOrchestrator",
        clock: Optional[Clock] = None,
        debounce: float = DEBOUNCE_SECONDS,
        min_interval: float = MIN_SYNC_INTERVAL_SECONDS,
        period: float = PERIODIC_SECONDS,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
    ) -> None:
        self._orchestrator = orchestrator
        self._clock = clock or SystemClock()
        self._debouncer = Debouncer(self._clock, debounce)
        self.min_interval = min_interval
        self.period = period
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

        self.consecutive_errors = 0
        self._last_success: Optional[float] = None
        self._retry_at: Optional[float] = None
        self._next_periodic: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Arm the periodic timer and start tracking sync outcomes."""
        if self._running:
            return
        self._running = True
        self._next_periodic = self._clock.monotonic() + self.period
        self._unsubscribe = self._orchestrator.on_event(self._on_event)
        logger.info("Sync scheduler started (every %.0fs)", self.period)

    def stop(self) -> None:
        """Cancel every pending timer."""
        self._running = False
        self._debouncer.cancel()
        self._retry_at = None
        self._next_periodic = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_event(self, event: SyncEvent) -> None:
        if event.kind == SyncEventKind.SYNC_COMPLETED:
            self.consecutive_errors = 0
            self._retry_at = None
            self._last_success = self._clock.monotonic()
        elif event.kind == SyncEventKind.SYNC_FAILED:
            self.consecutive_errors += 1
            delay = self.backoff_delay()
            self._retry_at = self._clock.monotonic() + delay
            logger.info(
                "Retrying sync in %.0fs (error #%d)", delay, self.consecutive_errors
            )

    def backoff_delay(self) -> float:
        """Delay before the next retry: doubling, capped."""
        if self.consecutive_errors <= 0:
            return 0.0
        return min(
            self.initial_backoff * 2 ** (self.consecutive_errors - 1),
            self.max_backoff,
        )

    # -- triggers -----------------------------------------------------------

    def notify_change(self) -> None:
        """Local state changed; sync once things go quiet."""
        if self._running:
            self._debouncer.poke()

    async def sync_now(self) -> Optional[SyncResult]:
        """User-initiated sync, ignoring the minimum interval."""
        return await self.trigger(TriggerReason.MANUAL)

    async def trigger(self, reason: TriggerReason) -> Optional[SyncResult]:
        """Run a sync if allowed.

        Returns:
            The sync result, or None when skipped or failed.
        """
        if reason != TriggerReason.MANUAL and self._last_success is not None:
            elapsed = self._clock.monotonic() - self._last_success
            if elapsed < self.min_interval:
                logger.debug(
                    "Skipping %s sync, only %.1fs since last", reason.value, elapsed
                )
                if reason == TriggerReason.STATE_CHANGE:
                    self._debouncer.poke(self.min_interval - elapsed)
                return None

        if not await self._orchestrator.is_ready_to_sync():
            logger.debug("Skipping %s sync, not ready", reason.value)
            return None

        logger.debug("Triggering sync (%s)", reason.value)
        try:
            return await self._orchestrator.sync_now()
        except SyncError as exc:
            logger.warning("Scheduled sync failed: %s", exc.message)
            return None

    async def tick(self) -> list[TriggerReason]:
        """Fire whichever timers are due.

        Returns:
            The reasons that fired, in order.
        """
        fired: list[TriggerReason] = []
        now = self._clock.monotonic()

        if self._debouncer.fire_if_due():
            fired.append(TriggerReason.STATE_CHANGE)
        if self._retry_at is not None and now >= self._retry_at:
            self._retry_at = None
            fired.append(TriggerReason.RETRY)
        if self._next_periodic is not None and now >= self._next_periodic:
            self._next_periodic = now + self.period
            fired.append(TriggerReason.PERIODIC)

        for reason in fired:
            await self.trigger(reason)
        return fired

    def next_deadline(self) -> Optional[float]:
        deadlines = [
            d for d in (self._debouncer.deadline, self._retry_at, self._next_periodic)
            if d is not None
        ]
        return min(deadlines) if deadlines else None

    async def run(self) -> None:
        """Drive the timers until ``stop()`` is called."""
        self.start()
        await self.trigger(TriggerReason.STARTUP)
        while self._running:
            deadline = self.next_deadline()
            if deadline is None:
                break
            await self._clock.sleep(max(0.0, deadline - self._clock.monotonic()))
            if self._running:
                await self.tick()
