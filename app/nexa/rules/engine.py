# nexa/rules/engine.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.nexa import rules_loader

from .actions import ActionExecutor
from .errors import NotFound, RuleDisabled, RuleNotExecutable
from .evaluator import RuleEvaluator
from .storage import DeviceStateLookup, ExecutionRecorder, RuleStore
from .types import (
    DeviceStateCondition,
    EvaluationContext,
    Execution,
    ExecutionStatus,
    Rule,
    RuleHealth,
    utcnow,
)

log = logging.getLogger("automation")


class AutomationOrchestrator:
    """
    Entry point of a rule run:
      - resolve the rule
      - open an in_progress execution record
      - evaluate conditions, run actions
      - close the record exactly once (one retry if the recorder fails)
      - announce automation:executed on the home channel

    Runs of the same rule are not serialized: two quick manual triggers
    give two independent executions.
    """

    def __init__(
        self,
        *,
        rules: RuleStore,
        recorder: ExecutionRecorder,
        executor: ActionExecutor,
        evaluator: Optional[RuleEvaluator] = None,
        bus: Any = None,
        device_states: Optional[DeviceStateLookup] = None,
    ) -> None:
        self._rules = rules
        self._recorder = recorder
        self._executor = executor
        self._evaluator = evaluator or RuleEvaluator()
        self._bus = bus
        self._device_states = device_states

    # ------------------------------------------------------------------ #
    # run
    # ------------------------------------------------------------------ #
    async def run_rule(
        self,
        rule_id: str,
        trigger_source: str = "manual",
        context: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        rule = await self._rules.get(rule_id)
        if rule is None:
            raise NotFound("automation", rule_id)
        if not rule.enabled:
            raise RuleDisabled(rule_id)
        if not rule.is_executable:
            raise RuleNotExecutable(rule_id)

        execution = Execution(
            id=uuid4().hex,
            rule_id=rule.id,
            home_id=rule.home_id,
            status=ExecutionStatus.IN_PROGRESS,
            triggered_by=trigger_source or "manual",
            trigger_context=dict(context or {}),
            started_at=utcnow(),
        )
        await self._recorder.create(execution)
        log.info(
            "rule %s (%s): execution %s started, trigger=%s",
            rule.id,
            rule.name,
            execution.id,
            execution.triggered_by,
        )

        try:
            status, result = await self._run(rule, execution)
        except Exception as exc:  # noqa: BLE001
            log.exception("rule %s: execution %s crashed", rule.id, execution.id)
            status = ExecutionStatus.FAILED
            result = {"error": str(exc) or exc.__class__.__name__}

        execution.status = status
        execution.completed_at = utcnow()
        execution.result = result

        await self._finalize(rule, execution)

        log.info("rule %s: execution %s -> %s", rule.id, execution.id, status.value)
        self._announce(execution)
        return execution

    async def _finalize(self, rule: Rule, execution: Execution) -> bool:
        """
        Write the terminal status, with one retry.
        If both attempts fail the stored row stays in_progress; the caller
        still gets the terminal execution and the failure is logged.
        """
        patch = {
            "status": execution.status,
            "completed_at": execution.completed_at,
            "result": execution.result,
        }
        for attempt in (1, 2):
            try:
                await self._recorder.update(execution.id, patch)
                return True
            except Exception as exc:  # noqa: BLE001
                if attempt == 1:
                    log.warning(
                        "rule %s: finalize of execution %s failed (%s), retrying",
                        rule.id,
                        execution.id,
                        exc,
                    )
                    continue
                log.exception("rule %s: could not finalize execution %s", rule.id, execution.id)
        return False

    async def _run(self, rule: Rule, execution: Execution) -> tuple:
        ctx = EvaluationContext.from_trigger_context(
            execution.triggered_by, execution.trigger_context
        )
        await self._fill_device_states(rule, ctx)

        evaluation = self._evaluator.evaluate(rule, ctx)
        if not evaluation.should_run:
            log.info(
                "rule %s: conditions not met (blocking=%s, unresolved=%s)",
                rule.id,
                evaluation.blocking_condition,
                evaluation.unresolved,
            )
            return ExecutionStatus.SUCCESS, {
                "actions": [],
                "reason": "conditions not met",
                "blocking_condition": evaluation.blocking_condition,
                "unresolved_conditions": list(evaluation.unresolved),
            }

        outcomes = await self._executor.execute(
            evaluation.actions,
            rule.mode,
            home_id=rule.home_id,
            rule_id=rule.id,
        )
        result: Dict[str, Any] = {"actions": [rules_loader.outcome_to_dict(o) for o in outcomes]}

        failed = [o for o in outcomes if o.failed]
        if not failed:
            return ExecutionStatus.SUCCESS, result

        result["error"] = "; ".join(
            f"action #{o.index} ({o.action.type.value}): {o.detail or 'failed'}" for o in failed
        )
        return ExecutionStatus.FAILED, result

    async def _fill_device_states(self, rule: Rule, ctx: EvaluationContext) -> None:
        """States passed by the caller win; the rest come from the lookup, if any."""
        if self._device_states is None:
            return
        for cond in rule.conditions:
            if not isinstance(cond, DeviceStateCondition):
                continue
            if cond.device_id in ctx.device_states:
                continue
            state = await self._device_states.get_state(cond.device_id)
            if state is not None:
                ctx.device_states[cond.device_id] = state

    def _announce(self, execution: Execution) -> None:
        if self._bus is None:
            return
        payload = {
            "executionId": execution.id,
            "automationId": execution.rule_id,
            "homeId": execution.home_id,
            "status": execution.status.value,
            "triggeredBy": execution.triggered_by,
            "completedAt": execution.completed_at.isoformat() if execution.completed_at else None,
        }
        try:
            self._bus.emit_automation_executed(execution.home_id, payload)
        except Exception:  # noqa: BLE001
            log.exception("automation:executed for %s was not published", execution.id)

    # ------------------------------------------------------------------ #
    # history
    # ------------------------------------------------------------------ #
    async def history(self, rule_id: str, limit: int = 20) -> List[Execution]:
        return await self._recorder.list_for_rule(rule_id, limit=limit)

    async def health(self, rule_id: str, window: int = 20) -> RuleHealth:
        """Health of a rule, computed over its last `window` executions."""
        items = await self._recorder.list_for_rule(rule_id, limit=window)

        health = RuleHealth(rule_id=rule_id, status="unknown", window=window, runs=len(items))
        for e in items:
            if e.status == ExecutionStatus.SUCCESS:
                health.success_count += 1
            elif e.status == ExecutionStatus.FAILED:
                health.failure_count += 1
            else:
                health.in_progress_count += 1

        if items:
            latest = items[0]
            health.last_status = latest.status
            health.last_started_at = latest.started_at
            health.last_completed_at = latest.completed_at

        # newest finished run decides between degraded and failing
        finished = next((e for e in items if e.status.is_terminal), None)
        if finished is None:
            return health
        if finished.status == ExecutionStatus.FAILED:
            health.status = "failing"
            health.last_error = finished.result.get("error")
        elif health.failure_count:
            health.status = "degraded"
        else:
            health.status = "healthy"
        return health

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self._recorder.get(execution_id)
        if execution is None:
            raise NotFound("execution", execution_id)
        return execution

