"""Tests for the in-process event bus."""

import asyncio

import pytest

from fleetlink.telemetry import Event, EventBus, EventName


def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls: list[str] = []

    bus.subscribe(lambda event: calls.append("first"))
    bus.subscribe(lambda event: calls.append("second"))
    bus.emit(EventName.BATTERY, device_id=1, value="10")

    assert calls == ["first", "second"]


def test_name_filter_limits_delivery():
    bus = EventBus()
    received: list[Event] = []

    bus.subscribe(received.append, names=[EventName.IS_FLYING])
    bus.emit(EventName.BATTERY, device_id=1, value="10")
    bus.emit(EventName.IS_FLYING, device_id=1, value=True)

    assert [event.name for event in received] == [EventName.IS_FLYING]
    assert received[0].payload == {"value": True}


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received: list[Event] = []

    unsubscribe = bus.subscribe(received.append)
    unsubscribe()
    unsubscribe()
    bus.emit(EventName.RAW_UPDATE)

    assert received == []
    assert bus.subscriber_count == 0


def test_failing_handler_does_not_block_others(caplog):
    bus = EventBus()
    received: list[Event] = []

    def broken(event):
        raise ValueError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit(EventName.BATTERY, device_id=2, value="1")

    assert len(received) == 1
    assert "Event handler failed" in caplog.text


@pytest.mark.asyncio
async def test_coroutine_handlers_are_scheduled_and_drained():
    bus = EventBus()
    received: list[Event] = []

    async def handler(event):
        await asyncio.sleep(0)
        received.append(event)

    bus.subscribe(handler)
    bus.emit(EventName.CONNECTION_OPENED, url="ws://example")

    assert received == []
    await bus.drain()
    assert [event.payload["url"] for event in received] == ["ws://example"]


def test_coroutine_handler_without_loop_is_dropped(caplog):
    bus = EventBus()

    async def handler(event):  # pragma: no cover - never awaited
        raise AssertionError("should not run")

    bus.subscribe(handler)
    bus.emit(EventName.CONNECTION_LOST)

    assert "No running loop" in caplog.text


def test_event_serialises_to_dict():
    event = Event(name=EventName.HEADING, device_id=3, payload={"value": 90.0})

    data = event.to_dict()

    assert data["eventName"] == "heading"
    assert data["deviceId"] == 3
    assert data["payload"] == {"value": 90.0}
    assert data["eventId"]
