"""Tests for the EventBus registry and the queue-backed connection."""

import asyncio

import pytest

from app.nexa.realtime.bus import (
    ALERT_NEW,
    DEVICE_STATE_CHANGE,
    ChannelKind,
    Connection,
    EventBus,
    QueueConnection,
    channel_name,
)

from tests.conftest import RecordingConnection

HOME = ChannelKind.HOME
DEVICE = ChannelKind.DEVICE


class BrokenConnection(Connection):
    def __init__(self, connection_id):
        self.id = connection_id

    def deliver(self, event, payload):
        raise RuntimeError("socket gone")


def test_fan_out_to_every_subscriber_of_the_channel(bus):
    a, b, c = RecordingConnection("a"), RecordingConnection("b"), RecordingConnection("c")
    bus.subscribe(a, HOME, "H1")
    bus.subscribe(b, HOME, "H1")
    bus.subscribe(c, HOME, "H2")

    delivered = bus.publish(HOME, "H1", ALERT_NEW, {"message": "smoke"})

    assert delivered == 2
    assert a.events == [(ALERT_NEW, {"message": "smoke"})]
    assert b.events == [(ALERT_NEW, {"message": "smoke"})]
    assert c.events == []


def test_subscribe_twice_delivers_once(bus):
    a = RecordingConnection("a")

    assert bus.subscribe(a, HOME, "H1") is True
    assert bus.subscribe(a, "home", "H1") is False
    bus.publish(HOME, "H1", ALERT_NEW, {})

    assert len(a.events) == 1
    assert bus.subscribers(HOME, "H1") == ["a"]


def test_unsubscribe_when_not_subscribed_is_a_no_op(bus):
    a = RecordingConnection("a")

    assert bus.unsubscribe(a, HOME, "H1") is False

    bus.subscribe(a, HOME, "H1")
    assert bus.unsubscribe(a, HOME, "H1") is True
    bus.publish(HOME, "H1", ALERT_NEW, {})
    assert a.events == []


def test_channels_are_exact_kind_and_id(bus):
    a = RecordingConnection("a")
    bus.subscribe(a, DEVICE, "H1")

    bus.publish(HOME, "H1", ALERT_NEW, {})

    assert a.events == []


def test_disconnect_drops_all_subscriptions(bus):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    bus.subscribe(a, HOME, "H1")
    bus.subscribe(a, DEVICE, "light-1")
    bus.subscribe(b, HOME, "H1")

    assert bus.disconnect(a) == 2
    assert bus.subscriptions(a) == set()
    assert bus.publish(HOME, "H1", ALERT_NEW, {}) == 1
    assert bus.publish(DEVICE, "light-1", DEVICE_STATE_CHANGE, {}) == 0
    assert a.events == []
    assert bus.connection_count == 1


def test_unknown_event_name_is_rejected(bus):
    with pytest.raises(ValueError):
        bus.publish(HOME, "H1", "alert:old", {})


def test_broken_connection_does_not_block_others(bus):
    bus.subscribe(BrokenConnection("x"), HOME, "H1")
    ok = RecordingConnection("ok")
    bus.subscribe(ok, HOME, "H1")

    assert bus.publish(HOME, "H1", ALERT_NEW, {"n": 1}) == 1
    assert ok.events == [(ALERT_NEW, {"n": 1})]


def test_device_state_change_goes_to_device_and_home(bus):
    home, device = RecordingConnection("home"), RecordingConnection("device")
    bus.subscribe(home, HOME, "H1")
    bus.subscribe(device, DEVICE, "light-1")

    bus.emit_device_state_change("H1", "light-1", "on")

    [(event, payload)] = home.events
    assert event == DEVICE_STATE_CHANGE
    assert payload["deviceId"] == "light-1"
    assert payload["state"] == "on"
    assert "timestamp" in payload
    assert device.events == home.events


def test_channel_name():
    assert channel_name(HOME, "H1") == "home:H1"
    assert channel_name("device", "light-1") == "device:light-1"


@pytest.mark.asyncio
async def test_queue_connection_drops_when_full():
    bus = EventBus()
    conn = QueueConnection("q", maxsize=1)
    bus.subscribe(conn, HOME, "H1")

    assert bus.publish(HOME, "H1", ALERT_NEW, {"n": 1}) == 1
    assert bus.publish(HOME, "H1", ALERT_NEW, {"n": 2}) == 0

    assert conn.dropped == 1
    assert conn.pending() == [(ALERT_NEW, {"n": 1})]


@pytest.mark.asyncio
async def test_queue_connection_accepts_events_from_other_threads():
    bus = EventBus()
    conn = QueueConnection("q")
    bus.subscribe(conn, HOME, "H1")

    await asyncio.to_thread(bus.publish, HOME, "H1", ALERT_NEW, {"from": "thread"})
    event = await asyncio.wait_for(conn.next_event(), timeout=1.0)

    assert event == (ALERT_NEW, {"from": "thread"})


@pytest.mark.asyncio
async def test_closed_connection_accepts_nothing():
    bus = EventBus()
    conn = QueueConnection("q")
    bus.subscribe(conn, HOME, "H1")

    bus.close()

    assert conn.closed is True
    assert bus.publish(HOME, "H1", ALERT_NEW, {}) == 0
    assert conn.deliver(ALERT_NEW, {}) is False
