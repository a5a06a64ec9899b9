"""Tests for the SQLAlchemy rule store and execution recorder (sqlite in memory)."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.session import init_db
from app.nexa.rules.actions import ActionExecutor
from app.nexa.rules.engine import AutomationOrchestrator
from app.nexa.rules.sql_repositories import SqlExecutionRecorder, SqlRuleStore
from app.nexa.rules.types import (
    DeviceControlAction,
    Execution,
    ExecutionStatus,
    utcnow,
)

from tests.conftest import FakeDevices, make_rule


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlRuleStore(session_factory)


@pytest.fixture
def sql_recorder(session_factory):
    return SqlExecutionRecorder(session_factory)


def one_action_rule(rule_id, **kwargs):
    kwargs.setdefault("actions", [DeviceControlAction("light-1", "turn_on", {"brightness": 40})])
    return make_rule(rule_id, **kwargs)


@pytest.mark.asyncio
async def test_save_and_get(sql_store):
    rule = one_action_rule("r1")
    await sql_store.save(rule)

    loaded = await sql_store.get("r1")

    assert loaded.name == rule.name
    assert loaded.actions == rule.actions
    assert loaded.created_at == rule.created_at


@pytest.mark.asyncio
async def test_save_updates_in_place(sql_store):
    await sql_store.save(one_action_rule("r1"))
    await sql_store.save(one_action_rule("r1", name="renamed", enabled=False))

    loaded = await sql_store.get("r1")

    assert loaded.name == "renamed"
    assert loaded.enabled is False


@pytest.mark.asyncio
async def test_list_is_scoped_filtered_and_newest_first(sql_store):
    now = utcnow()
    await sql_store.save(one_action_rule("old", created_at=now - timedelta(minutes=5)))
    await sql_store.save(one_action_rule("new", created_at=now))
    await sql_store.save(one_action_rule("off", created_at=now - timedelta(minutes=1), enabled=False))
    await sql_store.save(one_action_rule("elsewhere", home_id="H2"))

    assert [r.id for r in await sql_store.list("H1")] == ["new", "off", "old"]
    assert [r.id for r in await sql_store.list_enabled("H1")] == ["new", "old"]


@pytest.mark.asyncio
async def test_soft_delete_hides_the_rule(sql_store):
    await sql_store.save(one_action_rule("r1"))

    assert await sql_store.soft_delete("r1") is True
    assert await sql_store.soft_delete("r1") is False
    assert await sql_store.get("r1") is None
    assert await sql_store.list("H1") == []
    assert await sql_store.exists("r1") is True
    assert await sql_store.exists("never-saved") is False


@pytest.mark.asyncio
async def test_execution_lifecycle(sql_recorder):
    execution = Execution(
        id="e1",
        rule_id="r1",
        home_id="H1",
        status=ExecutionStatus.IN_PROGRESS,
        triggered_by="manual",
        trigger_context={"source": "test"},
    )
    await sql_recorder.create(execution)

    await sql_recorder.update(
        "e1",
        {"status": ExecutionStatus.SUCCESS, "completed_at": utcnow(), "result": {"actions": []}},
    )
    stored = await sql_recorder.get("e1")

    assert stored.status == ExecutionStatus.SUCCESS
    assert stored.result == {"actions": []}
    assert stored.trigger_context == {"source": "test"}
    assert stored.completed_at.tzinfo is not None

    with pytest.raises(ValueError):
        await sql_recorder.update("e1", {"status": ExecutionStatus.FAILED})


@pytest.mark.asyncio
async def test_update_of_unknown_execution(sql_recorder):
    with pytest.raises(KeyError):
        await sql_recorder.update("missing", {"status": ExecutionStatus.FAILED})


@pytest.mark.asyncio
async def test_orchestrator_over_sql(sql_store, sql_recorder):
    devices = FakeDevices()
    orchestrator = AutomationOrchestrator(
        rules=sql_store,
        recorder=sql_recorder,
        executor=ActionExecutor(devices=devices),
    )
    await sql_store.save(one_action_rule("r1"))

    first = await orchestrator.run_rule("r1")
    second = await orchestrator.run_rule("r1", trigger_source="schedule")

    history = await orchestrator.history("r1")
    assert [e.id for e in history] == [second.id, first.id]
    assert history[0].triggered_by == "schedule"
    assert history[1].result["actions"][0]["status"] == "success"
    assert devices.calls == [("light-1", "turn_on", {"brightness": 40})] * 2
