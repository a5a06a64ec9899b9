"""Shared fixtures for the automation test suite."""

import asyncio
from typing import Any, Dict, List, Tuple

import pytest

from app.nexa.realtime.bus import Connection, EventBus
from app.nexa.rules.actions import ActionExecutor
from app.nexa.rules.engine import AutomationOrchestrator
from app.nexa.rules.repositories import InMemoryExecutionRecorder, InMemoryRuleStore
from app.nexa.rules.storage import DeviceCommandSender
from app.nexa.rules.types import (
    CommandResult,
    DeviceControlAction,
    ExecutionMode,
    NotificationAction,
    Rule,
)


# =============================================================================
# Fakes
# =============================================================================


class FakeDevices(DeviceCommandSender):
    """Device command collaborator with scripted failures."""

    def __init__(self, failing=(), hanging=(), raising=()):
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.raising = set(raising)
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    async def send(self, device_id, command, parameters):
        self.calls.append((device_id, command, parameters))
        if device_id in self.hanging:
            await asyncio.sleep(3600)
        if device_id in self.raising:
            raise ConnectionError(f"{device_id} unreachable")
        if device_id in self.failing:
            return CommandResult(success=False, detail=f"{device_id} offline")
        return CommandResult(success=True, detail="ok")


class RecordingConnection(Connection):
    """Connection that keeps everything it was handed."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.events: List[Tuple[str, Any]] = []

    def deliver(self, event, payload):
        self.events.append((event, payload))
        return True


def make_rule(rule_id: str = "r1", **kwargs) -> Rule:
    kwargs.setdefault("home_id", "H1")
    kwargs.setdefault("name", f"rule {rule_id}")
    kwargs.setdefault(
        "actions",
        [
            DeviceControlAction(device_id="light-1", command="turn_on"),
            NotificationAction(message="done"),
        ],
    )
    kwargs.setdefault("mode", ExecutionMode.SEQUENTIAL)
    return Rule(id=rule_id, **kwargs)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store():
    return InMemoryRuleStore()


@pytest.fixture
def recorder():
    return InMemoryExecutionRecorder()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def executor(devices, bus):
    return ActionExecutor(devices=devices, notify=bus.emit_alert, action_timeout_s=1.0)


@pytest.fixture
def orchestrator(store, recorder, executor, bus):
    return AutomationOrchestrator(rules=store, recorder=recorder, executor=executor, bus=bus)
