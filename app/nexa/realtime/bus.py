# nexa/realtime/bus.py
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from threading import RLock
from typing import Any, Dict, List, Optional, Set, Tuple, Union
from uuid import uuid4

from app.nexa.rules.types import utcnow

log = logging.getLogger("realtime")


class ChannelKind(Enum):
    HOME = "home"
    DEVICE = "device"


DEVICE_STATE_CHANGE = "device:state-change"
ALERT_NEW = "alert:new"
AUTOMATION_EXECUTED = "automation:executed"

EVENT_NAMES = frozenset({DEVICE_STATE_CHANGE, ALERT_NEW, AUTOMATION_EXECUTED})

Channel = Tuple[ChannelKind, str]


def channel_name(kind: Union[ChannelKind, str], channel_id: str) -> str:
    """home:<id> / device:<id>"""
    return f"{ChannelKind(kind).value}:{channel_id}"


# ======================================================================
# 1. CONNECTIONS
# ======================================================================

class Connection(ABC):
    """
    One realtime client as the bus sees it.
    `deliver` must not block: it hands the event over and returns.
    """

    id: str

    @abstractmethod
    def deliver(self, event: str, payload: Any) -> bool:
        """True if the event was accepted for this client."""
        raise NotImplementedError


class QueueConnection(Connection):
    """
    Connection with a bounded outbound queue, drained by the transport
    (see gateway.py). A full queue drops the event for this client only.

    Must be created inside the event loop that will drain it; `deliver`
    may then be called from any thread.
    """

    def __init__(self, connection_id: Optional[str] = None, *, maxsize: int = 100) -> None:
        self.id = connection_id or uuid4().hex
        self.dropped = 0
        self.closed = False
        self._queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self._loop = asyncio.get_running_loop()

    def deliver(self, event: str, payload: Any) -> bool:
        if self.closed:
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            return self._put(event, payload)

        # publisher lives in another thread (e.g. the mqtt network loop)
        self._loop.call_soon_threadsafe(self._put, event, payload)
        return True

    def _put(self, event: str, payload: Any) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait((event, payload))
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("connection %s: queue full, dropped %s", self.id, event)
            return False

    async def next_event(self) -> Tuple[str, Any]:
        return await self._queue.get()

    def pending(self) -> List[Tuple[str, Any]]:
        """Take everything queued so far without waiting."""
        out: List[Tuple[str, Any]] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return out

    def close(self) -> None:
        self.closed = True


# ======================================================================
# 2. BUS
# ======================================================================

class EventBus:
    """
    Subscription registry + router keyed by (channel kind, channel id).

    Membership is changed and read under one lock, so a publish sees either
    the old or the new set of subscribers. Delivery happens outside the
    lock and each delivery is independent of the others.
    No buffering and no replay: whoever is not subscribed at publish time
    does not get the event.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._members: Dict[Channel, Dict[str, Connection]] = {}
        self._by_conn: Dict[str, Set[Channel]] = {}

    # ------------------------------------------------------------------ #
    # membership
    # ------------------------------------------------------------------ #
    def subscribe(
        self,
        conn: Connection,
        kind: Union[ChannelKind, str],
        channel_id: str,
    ) -> bool:
        """Join a channel. Returns False if it was already joined."""
        key: Channel = (ChannelKind(kind), str(channel_id))
        with self._lock:
            members = self._members.setdefault(key, {})
            if conn.id in members:
                return False
            members[conn.id] = conn
            self._by_conn.setdefault(conn.id, set()).add(key)
        log.debug("connection %s joined %s", conn.id, channel_name(*key))
        return True

    def unsubscribe(
        self,
        conn: Connection,
        kind: Union[ChannelKind, str],
        channel_id: str,
    ) -> bool:
        """Leave a channel. Returns False if it was not joined."""
        key: Channel = (ChannelKind(kind), str(channel_id))
        with self._lock:
            if not self._drop_unlocked(conn.id, key):
                return False
            channels = self._by_conn.get(conn.id)
            if channels is not None:
                channels.discard(key)
                if not channels:
                    del self._by_conn[conn.id]
        log.debug("connection %s left %s", conn.id, channel_name(*key))
        return True

    def disconnect(self, conn: Connection) -> int:
        """Forget every subscription of a lost connection."""
        with self._lock:
            channels = self._by_conn.pop(conn.id, set())
            for key in channels:
                self._drop_unlocked(conn.id, key)
        if channels:
            log.info("connection %s gone, dropped %d subscription(s)", conn.id, len(channels))
        return len(channels)

    def _drop_unlocked(self, conn_id: str, key: Channel) -> bool:
        members = self._members.get(key)
        if not members or conn_id not in members:
            return False
        del members[conn_id]
        if not members:
            del self._members[key]
        return True

    def subscriptions(self, conn: Connection) -> Set[Tuple[ChannelKind, str]]:
        with self._lock:
            return set(self._by_conn.get(conn.id, set()))

    def subscribers(self, kind: Union[ChannelKind, str], channel_id: str) -> List[str]:
        key: Channel = (ChannelKind(kind), str(channel_id))
        with self._lock:
            return list(self._members.get(key, {}).keys())

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._by_conn)

    # ------------------------------------------------------------------ #
    # publishing
    # ------------------------------------------------------------------ #
    def publish(
        self,
        kind: Union[ChannelKind, str],
        channel_id: str,
        event: str,
        payload: Any,
    ) -> int:
        """
        Hand the event to every connection on exactly this channel.
        Returns how many connections accepted it.
        """
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event}")

        key: Channel = (ChannelKind(kind), str(channel_id))
        with self._lock:
            receivers = list(self._members.get(key, {}).values())

        delivered = 0
        for conn in receivers:
            try:
                if conn.deliver(event, payload):
                    delivered += 1
            except Exception:  # noqa: BLE001
                # one broken client must not stop the others
                log.exception("delivery of %s to %s failed", event, conn.id)

        log.debug("publish %s on %s -> %d/%d", event, channel_name(*key), delivered, len(receivers))
        return delivered

    def emit_device_state_change(
        self,
        home_id: Optional[str],
        device_id: str,
        state: Any,
    ) -> int:
        """Device channel always, home channel when the home is known."""
        payload = {
            "deviceId": device_id,
            "homeId": home_id,
            "state": state,
            "timestamp": utcnow().isoformat(),
        }
        delivered = self.publish(ChannelKind.DEVICE, device_id, DEVICE_STATE_CHANGE, payload)
        if home_id:
            delivered += self.publish(ChannelKind.HOME, home_id, DEVICE_STATE_CHANGE, payload)
        return delivered

    def emit_alert(self, home_id: str, alert: Dict[str, Any]) -> int:
        return self.publish(ChannelKind.HOME, home_id, ALERT_NEW, alert)

    def emit_automation_executed(self, home_id: str, execution: Dict[str, Any]) -> int:
        return self.publish(ChannelKind.HOME, home_id, AUTOMATION_EXECUTED, execution)

    def close(self) -> None:
        """Shutdown: forget everyone."""
        with self._lock:
            conns = {c.id: c for members in self._members.values() for c in members.values()}
            self._members.clear()
            self._by_conn.clear()
        for conn in conns.values():
            if isinstance(conn, QueueConnection):
                conn.close()
