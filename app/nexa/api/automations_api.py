# app/nexa/api/automations_api.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from app.nexa.rules.errors import (
    AutomationError,
    NotFound,
    RuleDisabled,
    RuleNotExecutable,
    RuleValidationError,
)
from app.nexa.rules.types import Rule
from app.nexa.rules_loader import (
    apply_patch,
    execution_to_dict,
    health_to_dict,
    rule_from_dict,
    rule_to_dict,
)
from app.nexa.runtime import AutomationContext

router = APIRouter(prefix="/api", tags=["automations"])


class ExecuteIn(BaseModel):
    triggeredBy: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


def get_ctx(request: Request) -> AutomationContext:
    return request.app.state.automation


def http_error(e: AutomationError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(404, str(e))
    if isinstance(e, (RuleDisabled, RuleNotExecutable)):
        return HTTPException(409, str(e))
    if isinstance(e, RuleValidationError):
        return HTTPException(422, str(e))
    return HTTPException(400, str(e))


async def _rule_of_home(ctx: AutomationContext, home_id: str, automation_id: str) -> Rule:
    rule = await ctx.store.get(automation_id)
    # a rule of another home is as good as missing
    if rule is None or rule.home_id != home_id:
        raise http_error(NotFound("automation", automation_id))
    return rule


# ─────────────────────────────────────────────────────────────────────────────
# CRUD
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/homes/{home_id}/automations")
async def list_automations(
    home_id: str,
    enabled: Optional[bool] = None,
    ctx: AutomationContext = Depends(get_ctx),
) -> List[Dict[str, Any]]:
    return [rule_to_dict(r) for r in await ctx.store.list(home_id, enabled=enabled)]


@router.post("/homes/{home_id}/automations", status_code=201)
async def create_automation(
    home_id: str,
    payload: Dict[str, Any] = Body(...),
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    doc = dict(payload)
    doc.pop("id", None)  # ids are assigned here
    try:
        rule = rule_from_dict(doc, home_id=home_id)
    except RuleValidationError as e:
        raise http_error(e)
    await ctx.store.save(rule)
    return rule_to_dict(rule)


@router.get("/homes/{home_id}/automations/{automation_id}")
async def get_automation(
    home_id: str,
    automation_id: str,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    return rule_to_dict(await _rule_of_home(ctx, home_id, automation_id))


@router.patch("/homes/{home_id}/automations/{automation_id}")
async def update_automation(
    home_id: str,
    automation_id: str,
    patch: Dict[str, Any] = Body(...),
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    rule = await _rule_of_home(ctx, home_id, automation_id)
    try:
        updated = apply_patch(rule, patch)
    except RuleValidationError as e:
        raise http_error(e)
    await ctx.store.save(updated)
    return rule_to_dict(updated)


@router.delete("/homes/{home_id}/automations/{automation_id}")
async def delete_automation(
    home_id: str,
    automation_id: str,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    await _rule_of_home(ctx, home_id, automation_id)
    await ctx.store.soft_delete(automation_id)
    return {"ok": True, "id": automation_id}


# ─────────────────────────────────────────────────────────────────────────────
# runs
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/homes/{home_id}/automations/{automation_id}/execute")
async def execute_automation(
    home_id: str,
    automation_id: str,
    body: Optional[ExecuteIn] = None,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    body = body or ExecuteIn()
    await _rule_of_home(ctx, home_id, automation_id)
    try:
        execution = await ctx.orchestrator.run_rule(
            automation_id,
            trigger_source=body.triggeredBy or "manual",
            context=body.context,
        )
    except AutomationError as e:
        raise http_error(e)
    return execution_to_dict(execution)


@router.get("/homes/{home_id}/automations/{automation_id}/executions")
async def automation_executions(
    home_id: str,
    automation_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    ctx: AutomationContext = Depends(get_ctx),
) -> List[Dict[str, Any]]:
    await _rule_of_home(ctx, home_id, automation_id)
    items = await ctx.orchestrator.history(automation_id, limit=limit or ctx.history_limit)
    return [execution_to_dict(e) for e in items]


@router.get("/homes/{home_id}/automations/{automation_id}/health")
async def automation_health(
    home_id: str,
    automation_id: str,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    await _rule_of_home(ctx, home_id, automation_id)
    return health_to_dict(await ctx.orchestrator.health(automation_id, window=ctx.history_limit))


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    ctx: AutomationContext = Depends(get_ctx),
) -> Dict[str, Any]:
    try:
        return execution_to_dict(await ctx.orchestrator.get_execution(execution_id))
    except AutomationError as e:
        raise http_error(e)


@router.post("/automation/reload")
async def reload_rules(ctx: AutomationContext = Depends(get_ctx)) -> Dict[str, Any]:
    try:
        loaded = await ctx.reload_rules()
    except RuleValidationError as e:
        raise http_error(e)
    return {"ok": True, "loaded": loaded, "rules_file": ctx.rules_file}
