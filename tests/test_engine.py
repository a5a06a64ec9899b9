"""Tests for AutomationOrchestrator.run_rule and execution history."""

import asyncio

import pytest

from app.nexa.realtime.bus import AUTOMATION_EXECUTED, ChannelKind
from app.nexa.rules.actions import ActionExecutor
from app.nexa.rules.engine import AutomationOrchestrator
from app.nexa.rules.errors import NotFound, RuleDisabled, RuleNotExecutable
from app.nexa.rules.repositories import InMemoryDeviceRegistry
from app.nexa.rules.types import (
    ConditionOperator,
    DeviceControlAction,
    DeviceStateCondition,
    ExecutionMode,
    ExecutionStatus,
)

from tests.conftest import FakeDevices, RecordingConnection, make_rule


def thermostat_on():
    return DeviceStateCondition("thermostat-1", ConditionOperator.EQUALS, "on")


def turn_on_then_lock():
    return [
        DeviceControlAction("light-1", "turn_on"),
        DeviceControlAction("door-1", "lock"),
    ]


# =============================================================================
# the four reference scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_all_actions_succeed(store, recorder, orchestrator):
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.SUCCESS
    outcomes = execution.result["actions"]
    assert [o["status"] for o in outcomes] == ["success", "success"]
    assert [o["action"] for o in outcomes] == ["device_control", "notification"]
    assert "error" not in execution.result


@pytest.mark.asyncio
async def test_conditions_not_met_is_a_completed_no_op(store, devices, orchestrator):
    await store.save(make_rule("r1", conditions=[thermostat_on()]))

    execution = await orchestrator.run_rule(
        "r1", context={"device_states": {"thermostat-1": "off"}}
    )

    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.result["actions"] == []
    assert execution.result["reason"] == "conditions not met"
    assert execution.result["blocking_condition"] == 0
    assert devices.calls == []


@pytest.mark.asyncio
async def test_sequential_partial_failure(store, recorder, bus):
    devices = FakeDevices(failing={"light-1"})
    orchestrator = AutomationOrchestrator(
        rules=store, recorder=recorder, executor=ActionExecutor(devices=devices), bus=bus
    )
    await store.save(make_rule("r1", actions=turn_on_then_lock()))

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.FAILED
    assert [o["status"] for o in execution.result["actions"]] == ["failed", "success"]
    assert "light-1 offline" in execution.result["error"]


@pytest.mark.asyncio
async def test_parallel_partial_failure(store, recorder, bus):
    devices = FakeDevices(failing={"door-1"})
    orchestrator = AutomationOrchestrator(
        rules=store, recorder=recorder, executor=ActionExecutor(devices=devices), bus=bus
    )
    await store.save(make_rule("r1", actions=turn_on_then_lock(), mode=ExecutionMode.PARALLEL))

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.FAILED
    assert [o["status"] for o in execution.result["actions"]] == ["success", "failed"]
    assert len(devices.calls) == 2


# =============================================================================
# rejected invocations
# =============================================================================


@pytest.mark.asyncio
async def test_missing_rule(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.run_rule("nope")


@pytest.mark.asyncio
async def test_soft_deleted_rule_is_not_found(store, orchestrator):
    await store.save(make_rule("r1"))
    await store.soft_delete("r1")

    with pytest.raises(NotFound):
        await orchestrator.run_rule("r1")


@pytest.mark.asyncio
async def test_disabled_rule_creates_no_execution(store, recorder, orchestrator):
    await store.save(make_rule("r1", enabled=False))

    with pytest.raises(RuleDisabled):
        await orchestrator.run_rule("r1")

    assert await recorder.list_for_rule("r1") == []


@pytest.mark.asyncio
async def test_rule_without_actions_is_not_executable(store, recorder, orchestrator):
    await store.save(make_rule("r1", actions=[]))

    with pytest.raises(RuleNotExecutable):
        await orchestrator.run_rule("r1")

    assert await recorder.list_for_rule("r1") == []


# =============================================================================
# failures and records
# =============================================================================


@pytest.mark.asyncio
async def test_unexpected_error_still_finalizes(store, recorder, orchestrator, executor, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("executor exploded")

    monkeypatch.setattr(executor, "execute", boom)
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.FAILED
    assert execution.result == {"error": "executor exploded"}
    stored = await recorder.get(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_recorder_failure_on_finalize_still_returns(store, recorder, orchestrator, monkeypatch):
    async def broken_update(execution_id, patch):
        raise OSError("disk full")

    monkeypatch.setattr(recorder, "update", broken_update)
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.SUCCESS


@pytest.mark.asyncio
async def test_finalize_is_retried_once(store, recorder, orchestrator, monkeypatch):
    real_update = recorder.update
    attempts = []

    async def flaky_update(execution_id, patch):
        attempts.append(execution_id)
        if len(attempts) == 1:
            raise OSError("database is locked")
        await real_update(execution_id, patch)

    monkeypatch.setattr(recorder, "update", flaky_update)
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1")
    stored = await recorder.get(execution.id)

    assert len(attempts) == 2
    assert stored.status == ExecutionStatus.SUCCESS
    assert stored.completed_at == execution.completed_at


@pytest.mark.asyncio
async def test_finalize_gives_up_after_the_retry(store, recorder, orchestrator, monkeypatch):
    attempts = []

    async def broken_update(execution_id, patch):
        attempts.append(execution_id)
        raise OSError("disk full")

    monkeypatch.setattr(recorder, "update", broken_update)
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1")
    stored = await recorder.get(execution.id)

    assert len(attempts) == 2
    assert execution.status == ExecutionStatus.SUCCESS
    assert stored.status == ExecutionStatus.IN_PROGRESS

@pytest.mark.asyncio
async def test_execution_is_recorded_and_frozen(store, recorder, orchestrator):
    await store.save(make_rule("r1"))

    execution = await orchestrator.run_rule("r1", trigger_source="schedule", context={"at": "07:00"})
    stored = await recorder.get(execution.id)

    assert stored.status == ExecutionStatus.SUCCESS
    assert stored.triggered_by == "schedule"
    assert stored.trigger_context == {"at": "07:00"}
    assert stored.result == execution.result

    with pytest.raises(ValueError):
        await recorder.update(execution.id, {"status": ExecutionStatus.FAILED})


@pytest.mark.asyncio
async def test_completion_is_announced_on_the_home_channel(store, bus, orchestrator):
    home = RecordingConnection("c1")
    other = RecordingConnection("c2")
    bus.subscribe(home, ChannelKind.HOME, "H1")
    bus.subscribe(other, ChannelKind.HOME, "H2")
    await store.save(make_rule("r1", actions=[DeviceControlAction("light-1", "turn_on")]))

    execution = await orchestrator.run_rule("r1")

    [(event, payload)] = home.events
    assert event == AUTOMATION_EXECUTED
    assert payload["executionId"] == execution.id
    assert payload["automationId"] == "r1"
    assert payload["status"] == "success"
    assert other.events == []


@pytest.mark.asyncio
async def test_device_states_come_from_lookup(store, recorder):
    registry = InMemoryDeviceRegistry()
    registry.set_state("thermostat-1", "on")
    orchestrator = AutomationOrchestrator(
        rules=store,
        recorder=recorder,
        executor=ActionExecutor(devices=registry),
        device_states=registry,
    )
    await store.save(
        make_rule(
            "r1",
            conditions=[thermostat_on()],
            actions=[DeviceControlAction("light-1", "turn_on")],
        )
    )

    execution = await orchestrator.run_rule("r1")

    assert execution.status == ExecutionStatus.SUCCESS
    assert len(execution.result["actions"]) == 1
    assert registry.sent == [("light-1", "turn_on", {})]


@pytest.mark.asyncio
async def test_caller_state_wins_over_lookup(store, recorder):
    registry = InMemoryDeviceRegistry()
    registry.set_state("thermostat-1", "on")
    orchestrator = AutomationOrchestrator(
        rules=store,
        recorder=recorder,
        executor=ActionExecutor(devices=registry),
        device_states=registry,
    )
    await store.save(make_rule("r1", conditions=[thermostat_on()]))

    execution = await orchestrator.run_rule(
        "r1", context={"deviceStates": {"thermostat-1": "off"}}
    )

    assert execution.result["reason"] == "conditions not met"
    assert registry.sent == []


@pytest.mark.asyncio
async def test_history_newest_first_and_limited(store, orchestrator):
    await store.save(make_rule("r1", actions=[DeviceControlAction("light-1", "turn_on")]))
    ids = [(await orchestrator.run_rule("r1")).id for _ in range(3)]

    history = await orchestrator.history("r1", limit=2)

    assert [e.id for e in history] == [ids[2], ids[1]]


@pytest.mark.asyncio
async def test_concurrent_runs_get_their_own_executions(store, orchestrator):
    await store.save(make_rule("r1", actions=[DeviceControlAction("light-1", "turn_on")]))

    first, second = await asyncio.gather(orchestrator.run_rule("r1"), orchestrator.run_rule("r1"))

    assert first.id != second.id
    assert len(await orchestrator.history("r1")) == 2


@pytest.mark.asyncio
async def test_unknown_execution(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.get_execution("missing")


# =============================================================================
# health
# =============================================================================


@pytest.mark.asyncio
async def test_health_without_runs_is_unknown(orchestrator):
    health = await orchestrator.health("r1")

    assert health.status == "unknown"
    assert health.runs == 0
    assert health.last_status is None


@pytest.mark.asyncio
async def test_health_follows_the_latest_finished_run(store, devices, orchestrator):
    await store.save(make_rule("r1"))

    await orchestrator.run_rule("r1")
    assert (await orchestrator.health("r1")).status == "healthy"

    devices.failing.add("light-1")
    failed = await orchestrator.run_rule("r1")
    health = await orchestrator.health("r1")
    assert health.status == "failing"
    assert health.last_status == ExecutionStatus.FAILED
    assert health.last_completed_at == failed.completed_at
    assert "light-1 offline" in health.last_error

    devices.failing.clear()
    await orchestrator.run_rule("r1")
    health = await orchestrator.health("r1")
    assert health.status == "degraded"
    assert (health.runs, health.success_count, health.failure_count) == (3, 2, 1)


@pytest.mark.asyncio
async def test_health_window_limits_the_counts(store, devices, orchestrator):
    await store.save(make_rule("r1"))
    devices.failing.add("light-1")
    await orchestrator.run_rule("r1")
    devices.failing.clear()
    await orchestrator.run_rule("r1")
    await orchestrator.run_rule("r1")

    health = await orchestrator.health("r1", window=2)

    assert health.status == "healthy"
    assert (health.runs, health.failure_count) == (2, 0)
