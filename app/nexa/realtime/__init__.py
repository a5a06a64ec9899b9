# nexa/realtime/__init__.py
"""
Realtime fan-out.

  - bus.py     → EventBus, channel kinds, event names, queue-backed connections
  - gateway.py → WebSocket endpoint /ws
"""
from .bus import (
    ALERT_NEW,
    AUTOMATION_EXECUTED,
    DEVICE_STATE_CHANGE,
    ChannelKind,
    Connection,
    EventBus,
    QueueConnection,
)

__all__ = [
    "ALERT_NEW",
    "AUTOMATION_EXECUTED",
    "DEVICE_STATE_CHANGE",
    "ChannelKind",
    "Connection",
    "EventBus",
    "QueueConnection",
]
