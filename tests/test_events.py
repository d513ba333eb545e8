import pytest

from torrent_engine.events import EventBus, EventType


def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.PIECE_VERIFIED, lambda i, at: calls.append(("first", i)))
    bus.subscribe("piece-verified", lambda i, at: calls.append(("second", i)))

    bus.emit(EventType.PIECE_VERIFIED, 3, 1.0)
    assert calls == [("first", 3), ("second", 3)]


def test_cancelled_subscription_stops_delivery():
    bus = EventBus()
    calls = []
    sub = bus.subscribe(EventType.DONE, lambda: calls.append(1))
    bus.emit(EventType.DONE)
    sub.cancel()
    sub.cancel()
    bus.emit(EventType.DONE)
    assert calls == [1]
    assert bus.subscriber_count() == 0


def test_failing_handler_does_not_block_others():
    bus = EventBus()
    calls = []

    def broken():
        raise RuntimeError("boom")

    bus.subscribe(EventType.READY, broken)
    bus.subscribe(EventType.READY, lambda: calls.append("ok"))
    bus.emit(EventType.READY)
    assert calls == ["ok"]


def test_closed_bus_rejects_subscribers():
    bus = EventBus()
    bus.subscribe(EventType.WARNING, print)
    bus.close()
    assert bus.subscriber_count() == 0
    with pytest.raises(RuntimeError):
        bus.subscribe(EventType.WARNING, print)
    with pytest.raises(ValueError):
        EventBus().subscribe("no-such-event", print)
