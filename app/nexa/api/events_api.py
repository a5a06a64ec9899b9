# app/nexa/api/events_api.py
from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.nexa.api.automations_api import get_ctx
from app.nexa.rules.types import NotificationSeverity, utcnow
from app.nexa.runtime import AutomationContext

router = APIRouter(prefix="/api", tags=["events"])


class DeviceStateIn(BaseModel):
    state: Any


class AlertIn(BaseModel):
    type: str = "system"
    title: Optional[str] = None
    message: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    deviceId: Optional[str] = None


@router.post("/homes/{home_id}/devices/{device_id}/state")
async def device_state_changed(
    home_id: str,
    device_id: str,
    body: DeviceStateIn,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    delivered = ctx.device_state_changed(home_id, device_id, body.state)
    return {"ok": True, "delivered": delivered}


@router.post("/homes/{home_id}/alerts", status_code=201)
async def new_alert(
    home_id: str,
    body: AlertIn,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    alert = {
        "id": uuid4().hex,
        "homeId": home_id,
        "type": body.type,
        "title": body.title,
        "message": body.message,
        "severity": body.severity.value,
        "deviceId": body.deviceId,
        "timestamp": utcnow().isoformat(),
    }
    delivered = ctx.raise_alert(home_id, alert)
    return {"ok": True, "alert": alert, "delivered": delivered}


@router.get("/health")
async def health(ctx: AutomationContext = Depends(get_ctx)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "connections": ctx.bus.connection_count,
        "mqtt": ctx.mqtt.connected if ctx.mqtt is not None else None,
    }
