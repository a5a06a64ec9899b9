# nexa/rules/sql_repositories.py
"""
SQLAlchemy-backed Rule Store and Execution Recorder.

Session work is blocking, so every call is pushed to a worker thread with
asyncio.to_thread; the event loop only awaits the result.
Rules are stored as rows of `automations` with the trigger/condition/action
lists in JSON columns and go through rules_loader on the way back, so a
row that no longer validates fails loudly instead of running half-parsed.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.db.models import AutomationExecutionRow, AutomationRow
from app.nexa.rules_loader import rule_from_dict, rule_to_dict

from .storage import ExecutionRecorder, RuleStore, check_patch_allowed
from .types import Execution, ExecutionStatus, Rule, utcnow

log = logging.getLogger("automation")


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands timestamps back without tzinfo
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


# ======================================================================
# 1. RULES
# ======================================================================

def _row_to_rule(row: AutomationRow) -> Rule:
    return rule_from_dict(
        {
            "id": row.id,
            "home_id": row.home_id,
            "name": row.name,
            "description": row.description,
            "automation_type": row.automation_type,
            "enabled": bool(row.is_active),
            "execution_mode": row.execution_mode,
            "triggers": row.triggers or [],
            "conditions": row.conditions or [],
            "actions": row.actions or [],
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
            "deleted_at": _aware(row.deleted_at),
        }
    )


def _fill_row(row: AutomationRow, rule: Rule) -> None:
    doc = rule_to_dict(rule)
    row.home_id = rule.home_id
    row.name = rule.name
    row.description = rule.description
    row.automation_type = doc["automation_type"]
    row.is_active = rule.enabled
    row.execution_mode = doc["execution_mode"]
    row.triggers = doc["triggers"]
    row.conditions = doc["conditions"]
    row.actions = doc["actions"]
    row.created_at = rule.created_at
    row.updated_at = rule.updated_at
    row.deleted_at = rule.deleted_at


class SqlRuleStore(RuleStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # --- sync bodies, run in a worker thread ---
    def _get_sync(self, rule_id: str) -> Optional[Rule]:
        with self._session_factory() as db:
            row = db.get(AutomationRow, rule_id)
            if row is None or row.deleted_at is not None:
                return None
            return _row_to_rule(row)

    def _list_sync(self, home_id: str, enabled: Optional[bool]) -> List[Rule]:
        stmt = (
            select(AutomationRow)
            .where(AutomationRow.home_id == home_id)
            .where(AutomationRow.deleted_at.is_(None))
        )
        if enabled is not None:
            stmt = stmt.where(AutomationRow.is_active == enabled)
        stmt = stmt.order_by(AutomationRow.created_at.desc())
        with self._session_factory() as db:
            return [_row_to_rule(r) for r in db.execute(stmt).scalars()]

    def _exists_sync(self, rule_id: str) -> bool:
        with self._session_factory() as db:
            return db.get(AutomationRow, rule_id) is not None

    def _save_sync(self, rule: Rule) -> Rule:
        with self._session_factory() as db:
            row = db.get(AutomationRow, rule.id)
            if row is None:
                row = AutomationRow(id=rule.id)
                db.add(row)
            _fill_row(row, rule)
            db.commit()
        return rule

    def _soft_delete_sync(self, rule_id: str) -> bool:
        with self._session_factory() as db:
            row = db.get(AutomationRow, rule_id)
            if row is None or row.deleted_at is not None:
                return False
            row.deleted_at = utcnow()
            db.commit()
            return True

    # --- RuleStore ---
    async def get(self, rule_id: str) -> Optional[Rule]:
        return await asyncio.to_thread(self._get_sync, rule_id)

    async def list(self, home_id: str, enabled: Optional[bool] = None) -> List[Rule]:
        return await asyncio.to_thread(self._list_sync, home_id, enabled)

    async def exists(self, rule_id: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, rule_id)

    async def save(self, rule: Rule) -> Rule:
        return await asyncio.to_thread(self._save_sync, rule)

    async def soft_delete(self, rule_id: str) -> bool:
        deleted = await asyncio.to_thread(self._soft_delete_sync, rule_id)
        if deleted:
            log.info("automation %s soft-deleted", rule_id)
        return deleted


# ======================================================================
# 2. EXECUTIONS
# ======================================================================

def _row_to_execution(row: AutomationExecutionRow) -> Execution:
    return Execution(
        id=row.id,
        rule_id=row.automation_id,
        home_id=row.home_id,
        status=ExecutionStatus(row.execution_status),
        triggered_by=row.triggered_by,
        trigger_context=dict(row.trigger_context or {}),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        result=dict(row.execution_result or {}),
    )


class SqlExecutionRecorder(ExecutionRecorder):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _by_id(self, db, execution_id: str) -> Optional[AutomationExecutionRow]:
        stmt = select(AutomationExecutionRow).where(AutomationExecutionRow.id == execution_id)
        return db.execute(stmt).scalar_one_or_none()

    def _create_sync(self, execution: Execution) -> str:
        with self._session_factory() as db:
            db.add(
                AutomationExecutionRow(
                    id=execution.id,
                    automation_id=execution.rule_id,
                    home_id=execution.home_id,
                    execution_status=execution.status.value,
                    triggered_by=execution.triggered_by,
                    trigger_context=execution.trigger_context,
                    execution_result=execution.result,
                    started_at=execution.started_at,
                    completed_at=execution.completed_at,
                )
            )
            db.commit()
        return execution.id

    def _update_sync(self, execution_id: str, patch: Dict[str, Any]) -> None:
        with self._session_factory() as db:
            row = self._by_id(db, execution_id)
            if row is None:
                raise KeyError(execution_id)
            check_patch_allowed(_row_to_execution(row), patch)
            if "status" in patch:
                row.execution_status = ExecutionStatus(patch["status"]).value
            if "completed_at" in patch:
                row.completed_at = patch["completed_at"]
            if "result" in patch:
                row.execution_result = patch["result"]
            db.commit()

    def _get_sync(self, execution_id: str) -> Optional[Execution]:
        with self._session_factory() as db:
            row = self._by_id(db, execution_id)
            return _row_to_execution(row) if row is not None else None

    def _list_sync(self, rule_id: str, limit: int) -> List[Execution]:
        stmt = (
            select(AutomationExecutionRow)
            .where(AutomationExecutionRow.automation_id == rule_id)
            .order_by(AutomationExecutionRow.seq.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [_row_to_execution(r) for r in db.execute(stmt).scalars()]

    async def create(self, execution: Execution) -> str:
        return await asyncio.to_thread(self._create_sync, execution)

    async def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._update_sync, execution_id, patch)

    async def get(self, execution_id: str) -> Optional[Execution]:
        return await asyncio.to_thread(self._get_sync, execution_id)

    async def list_for_rule(self, rule_id: str, limit: int = 20) -> List[Execution]:
        return await asyncio.to_thread(self._list_sync, rule_id, limit)
