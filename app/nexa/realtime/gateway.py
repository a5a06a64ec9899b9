# nexa/realtime/gateway.py
"""
WebSocket transport for the event bus.

Frames are JSON text, both ways: {"event": "<name>", "data": {...}}

client -> server
  subscribe:home      {"homeId": "H1"}
  unsubscribe:home    {"homeId": "H1"}
  subscribe:device    {"deviceId": "light-1"}
  unsubscribe:device  {"deviceId": "light-1"}

server -> client
  the same event name as an ack: {"status": "subscribed", "homeId": "H1"}
  device:state-change / alert:new / automation:executed pushes
  error {"message": ...} for malformed or unknown frames (socket stays open)
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .bus import ChannelKind, EventBus, QueueConnection

log = logging.getLogger("realtime")

router = APIRouter()

ERROR_EVENT = "error"

# event -> (subscribe?, channel kind, id key in data)
_COMMANDS: Dict[str, Tuple[bool, ChannelKind, str]] = {
    "subscribe:home": (True, ChannelKind.HOME, "homeId"),
    "unsubscribe:home": (False, ChannelKind.HOME, "homeId"),
    "subscribe:device": (True, ChannelKind.DEVICE, "deviceId"),
    "unsubscribe:device": (False, ChannelKind.DEVICE, "deviceId"),
}


def _error(message: str) -> Tuple[str, Dict[str, Any]]:
    return ERROR_EVENT, {"message": message}


def handle_frame(bus: EventBus, conn: QueueConnection, raw: str) -> Tuple[str, Dict[str, Any]]:
    """Apply one client frame; returns the (event, data) reply."""
    try:
        frame = json.loads(raw)
    except ValueError:
        return _error("malformed frame: not JSON")
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return _error("malformed frame: expected {\"event\": ..., \"data\": ...}")

    event = frame["event"]
    command = _COMMANDS.get(event)
    if command is None:
        return _error(f"unknown event: {event}")

    is_subscribe, kind, id_key = command
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        return _error(f"{event}: data must be an object")

    # snake_case is accepted for older clients
    channel_id = data.get(id_key) or data.get("home_id" if kind == ChannelKind.HOME else "device_id")
    if not channel_id:
        return _error(f"{event}: {id_key} is required")
    channel_id = str(channel_id)

    if is_subscribe:
        bus.subscribe(conn, kind, channel_id)
        status = "subscribed"
    else:
        bus.unsubscribe(conn, kind, channel_id)
        status = "unsubscribed"
    return event, {"status": status, id_key: channel_id}


async def _pump(ws: WebSocket, conn: QueueConnection, send_lock: asyncio.Lock) -> None:
    """Drain the connection queue into the socket."""
    try:
        while True:
            event, payload = await conn.next_event()
            async with send_lock:
                await ws.send_json({"event": event, "data": payload})
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.debug("connection %s: writer stopped: %s", conn.id, e)


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket):
    ctx = ws.app.state.automation
    bus: EventBus = ctx.bus

    await ws.accept()
    conn = QueueConnection(maxsize=ctx.queue_size)
    send_lock = asyncio.Lock()
    writer = asyncio.create_task(_pump(ws, conn, send_lock))
    log.info("connection %s opened", conn.id)

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                log.info("connection %s closed by client", conn.id)
                break

            raw = message.get("text")
            if raw is None:
                # binary frames are not part of the protocol
                event, data = _error("malformed frame: expected text")
            else:
                event, data = handle_frame(bus, conn, raw)
            async with send_lock:
                await ws.send_json({"event": event, "data": data})
    except WebSocketDisconnect:
        log.info("connection %s closed by client", conn.id)
    finally:
        bus.disconnect(conn)
        conn.close()
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
