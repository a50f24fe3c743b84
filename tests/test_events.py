"""Tests for the event emitter."""

from __future__ import annotations

from flowsync.events import EventEmitter
from flowsync.models import SyncEvent, SyncEventKind


def _event(kind: SyncEventKind = SyncEventKind.SYNC_STARTED) -> SyncEvent:
    return SyncEvent(kind=kind)


class TestEventEmitter:
    """Ordered, synchronous fan-out with idempotent disposers."""

    def test_delivers_in_subscription_order(self):
        emitter = EventEmitter()
        order: list[int] = []
        emitter.subscribe(lambda e: order.append(1))
        emitter.subscribe(lambda e: order.append(2))
        emitter.subscribe(lambda e: order.append(3))

        emitter.emit(_event())

        assert order == [1, 2, 3]

    def test_unsubscribe_twice(self):
        emitter = EventEmitter()
        received: list[SyncEvent] = []
        unsubscribe = emitter.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        emitter.emit(_event())

        assert received == []
        assert len(emitter) == 0

    def test_same_listener_twice_removed_once(self):
        emitter = EventEmitter()
        received: list[SyncEvent] = []
        first = emitter.subscribe(received.append)
        emitter.subscribe(received.append)

        first()
        first()
        emitter.emit(_event())

        assert len(received) == 1

    def test_raising_listener_is_isolated(self, caplog):
        emitter = EventEmitter()
        received: list[SyncEvent] = []

        def broken(event):
            raise RuntimeError("boom")

        emitter.subscribe(broken)
        emitter.subscribe(received.append)

        emitter.emit(_event(SyncEventKind.SYNC_FAILED))

        assert len(received) == 1
        assert "sync_failed" in caplog.text

    def test_unsubscribe_during_emit(self):
        emitter = EventEmitter()
        received: list[str] = []
        disposers = []

        def once(event):
            received.append("once")
            disposers[0]()

        disposers.append(emitter.subscribe(once))
        emitter.subscribe(lambda e: received.append("other"))

        emitter.emit(_event())
        emitter.emit(_event())

        assert received == ["once", "other", "other"]
