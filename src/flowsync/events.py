"""
Sync event dispatch.

An explicit subscriber list: listeners run synchronously, in the
order they subscribed. A listener that raises is logged and skipped
so one broken view cannot stall sync.
"""

from __future__ import annotations

import logging
from typing import Callable

from .models import SyncEvent

logger = logging.getLogger("flowsync.events")

SyncEventListener = Callable[[SyncEvent], None]


class EventEmitter:
    """Ordered, synchronous event fan-out."""

    def __init__(self) -> None:
        self._listeners: list[SyncEventListener] = []

    def subscribe(self, listener: SyncEventListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A disposer. Calling it more than once is harmless.
        """
        self._listeners.append(listener)
        disposed = False

        def unsubscribe() -> None:
            nonlocal disposed
            if disposed:
                return
            disposed = True
            self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        """Deliver an event to every current listener."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error(
                    "Sync event listener failed on %s: %s",
                    event.kind.value,
                    exc,
                )

    def __len__(self) -> int:
        return len(self._listeners)
