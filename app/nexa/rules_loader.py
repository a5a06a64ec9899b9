# app/nexa/rules_loader.py
"""
Rule documents <-> models.

This is the only place where loosely typed rule JSON/YAML is turned into
the closed trigger/condition/action variants, so every store and the API
go through it. Problems raise RuleValidationError (a ValueError) with the
path of the offending field.

Document shape (YAML shown, JSON is the same):

rules:
  - id: "evening_lights"
    home_id: "H1"
    name: "Evening lights"
    enabled: true                 # "is_active" is accepted too
    automation_type: "time_based"
    execution_mode: "sequential"  # or "parallel"
    triggers:
      - type: "schedule"
        at: "19:30"
        days: ["mon", "tue", "wed", "thu", "fri"]
    conditions:
      - type: "device_state"
        device_id: "thermostat-1"
        operator: "equals"
        value: "on"
    actions:
      - type: "device_control"
        device_id: "light-1"
        command: "turn_on"
        parameters: {brightness: 70}
      - type: "notification"
        message: "Lights are on"
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import yaml

from app.nexa.rules.errors import RuleValidationError
from app.nexa.rules.types import (
    WEEKDAYS,
    Action,
    ActionOutcome,
    AutomationType,
    Condition,
    ConditionOperator,
    DayOfWeekCondition,
    DelayAction,
    DeviceCommand,
    DeviceControlAction,
    DeviceStateCondition,
    DeviceStateTrigger,
    Execution,
    ExecutionMode,
    LocationTrigger,
    NotificationAction,
    NotificationSeverity,
    Rule,
    RuleHealth,
    SceneAction,
    ScheduleTrigger,
    SensorTrigger,
    SensorValueCondition,
    TimeRangeCondition,
    Trigger,
    utcnow,
)


# ----------------------------------------------------------------------
# small checks
# ----------------------------------------------------------------------
def _require_dict(obj: Any, path: str) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        raise RuleValidationError(f"{path}: must be an object")
    return obj


def _require_list(obj: Any, path: str) -> List[Any]:
    if obj is None:
        return []
    if not isinstance(obj, list):
        raise RuleValidationError(f"{path}: must be an array")
    return obj


def _require_str(v: Any, path: str) -> str:
    if not isinstance(v, str) or not v.strip():
        raise RuleValidationError(f"{path}: must be a non-empty string")
    return v.strip()


def _optional_str(v: Any, path: str) -> Optional[str]:
    if v is None:
        return None
    if not isinstance(v, str):
        raise RuleValidationError(f"{path}: must be a string")
    return v


def _enum(enum_cls, v: Any, path: str):
    try:
        return enum_cls(str(v).strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise RuleValidationError(f"{path}: unknown value {v!r} (allowed: {allowed})")


def _time_of_day(v: Any, path: str) -> time:
    if isinstance(v, time):
        return v
    try:
        return time.fromisoformat(str(v).strip())
    except ValueError:
        raise RuleValidationError(f"{path}: must be a time of day HH:MM, got {v!r}")


def _days(v: Any, path: str) -> tuple:
    items = [v] if isinstance(v, str) else _require_list(v, path)
    out = []
    for i, d in enumerate(items):
        token = str(d).strip().lower()[:3]
        if token not in WEEKDAYS:
            raise RuleValidationError(f"{path}[{i}]: unknown day {d!r}")
        out.append(token)
    return tuple(out)


def _number(v: Any, path: str) -> float:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise RuleValidationError(f"{path}: must be a number")
    return v


def _timestamp(v: Any, path: str) -> Optional[datetime]:
    if v is None or isinstance(v, datetime):
        return v
    try:
        return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    except ValueError:
        raise RuleValidationError(f"{path}: must be an ISO timestamp")


def _operator_value(d: Dict[str, Any], path: str) -> tuple:
    op = _enum(ConditionOperator, d.get("operator", "equals"), f"{path}.operator")
    if "value" not in d:
        raise RuleValidationError(f"{path}.value: is required")
    value = d["value"]
    if op == ConditionOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise RuleValidationError(f"{path}.value: between needs [low, high]")
        value = tuple(value)
    return op, value


# ----------------------------------------------------------------------
# triggers
# ----------------------------------------------------------------------
def _parse_trigger(d: Any, path: str) -> Trigger:
    d = _require_dict(d, path)
    t = str(d.get("type", "")).strip().lower()

    # "time" + "value" is the older dashboard spelling of a schedule
    if t in ("schedule", "time"):
        return ScheduleTrigger(
            at=_time_of_day(d.get("at", d.get("value")), f"{path}.at"),
            days=_days(d.get("days") or [], f"{path}.days"),
        )
    if t == "device_state":
        return DeviceStateTrigger(
            device_id=_require_str(d.get("device_id"), f"{path}.device_id"),
            state=_require_str(str(d.get("state", "")), f"{path}.state"),
        )
    if t == "sensor":
        op, value = _operator_value(d, path)
        return SensorTrigger(
            sensor_id=_require_str(d.get("sensor_id"), f"{path}.sensor_id"),
            operator=op,
            value=value,
        )
    if t == "location":
        event = _require_str(d.get("event"), f"{path}.event").lower()
        if event not in ("arrive", "leave"):
            raise RuleValidationError(f"{path}.event: must be arrive or leave")
        return LocationTrigger(event=event, user_id=_optional_str(d.get("user_id"), f"{path}.user_id"))

    raise RuleValidationError(f"{path}.type: unknown trigger type {t!r}")


# ----------------------------------------------------------------------
# conditions
# ----------------------------------------------------------------------
def _parse_condition(d: Any, path: str) -> Condition:
    d = _require_dict(d, path)
    t = str(d.get("type", "")).strip().lower()
    op, value = _operator_value(d, path)

    if t == "device_state":
        return DeviceStateCondition(
            device_id=_require_str(d.get("device_id"), f"{path}.device_id"),
            operator=op,
            value=value,
        )
    if t == "sensor_value":
        return SensorValueCondition(
            sensor_id=_require_str(d.get("sensor_id"), f"{path}.sensor_id"),
            operator=op,
            value=value,
        )
    if t == "time_range":
        if op == ConditionOperator.BETWEEN:
            value = tuple(_time_of_day(x, f"{path}.value") for x in value)
        else:
            value = _time_of_day(value, f"{path}.value")
        return TimeRangeCondition(operator=op, value=value)
    if t == "day_of_week":
        if op != ConditionOperator.EQUALS:
            raise RuleValidationError(f"{path}.operator: day_of_week supports equals only")
        return DayOfWeekCondition(operator=op, value=_days(value, f"{path}.value"))

    raise RuleValidationError(f"{path}.type: unknown condition type {t!r}")


# ----------------------------------------------------------------------
# actions
# ----------------------------------------------------------------------
def _parse_command(d: Any, path: str) -> DeviceCommand:
    d = _require_dict(d, path)
    return DeviceCommand(
        device_id=_require_str(d.get("device_id"), f"{path}.device_id"),
        # "action" is how the dashboard names the command
        command=_require_str(d.get("command", d.get("action")), f"{path}.command"),
        parameters=dict(_require_dict(d.get("parameters") or {}, f"{path}.parameters")),
    )


def _parse_action(d: Any, path: str) -> Action:
    d = _require_dict(d, path)
    t = str(d.get("type", "")).strip().lower()

    if t == "device_control":
        cmd = _parse_command(d, path)
        return DeviceControlAction(
            device_id=cmd.device_id,
            command=cmd.command,
            parameters=cmd.parameters,
        )
    if t == "notification":
        return NotificationAction(
            message=_require_str(d.get("message"), f"{path}.message"),
            title=_optional_str(d.get("title"), f"{path}.title"),
            severity=_enum(NotificationSeverity, d.get("severity", "info"), f"{path}.severity"),
        )
    if t == "scene":
        commands = _require_list(d.get("commands"), f"{path}.commands")
        return SceneAction(
            scene_id=_require_str(d.get("scene_id"), f"{path}.scene_id"),
            commands=tuple(
                _parse_command(c, f"{path}.commands[{i}]") for i, c in enumerate(commands)
            ),
        )
    if t == "delay":
        seconds = _number(d.get("seconds"), f"{path}.seconds")
        if seconds < 0:
            raise RuleValidationError(f"{path}.seconds: must be >= 0")
        return DelayAction(seconds=seconds)

    raise RuleValidationError(f"{path}.type: unknown action type {t!r}")


# ----------------------------------------------------------------------
# rules
# ----------------------------------------------------------------------
def rule_from_dict(data: Any, *, home_id: Optional[str] = None) -> Rule:
    """
    Build a validated Rule. `home_id` (from the URL) wins over the document.
    Zero actions is accepted: such a rule is a draft and is refused at run time.
    """
    d = _require_dict(data, "rule")

    enabled = d.get("enabled", d.get("is_active", True))
    if not isinstance(enabled, bool):
        raise RuleValidationError("rule.enabled: must be bool")

    now = utcnow()
    return Rule(
        id=str(d.get("id") or uuid4()),
        home_id=_require_str(home_id or d.get("home_id"), "rule.home_id"),
        name=_require_str(d.get("name"), "rule.name"),
        enabled=enabled,
        triggers=[
            _parse_trigger(t, f"rule.triggers[{i}]")
            for i, t in enumerate(_require_list(d.get("triggers"), "rule.triggers"))
        ],
        conditions=[
            _parse_condition(c, f"rule.conditions[{i}]")
            for i, c in enumerate(_require_list(d.get("conditions"), "rule.conditions"))
        ],
        actions=[
            _parse_action(a, f"rule.actions[{i}]")
            for i, a in enumerate(_require_list(d.get("actions"), "rule.actions"))
        ],
        mode=_enum(
            ExecutionMode,
            d.get("execution_mode", d.get("mode", "sequential")),
            "rule.execution_mode",
        ),
        automation_type=_enum(
            AutomationType,
            d.get("automation_type", "device_triggered"),
            "rule.automation_type",
        ),
        description=_optional_str(d.get("description"), "rule.description"),
        deleted_at=_timestamp(d.get("deleted_at"), "rule.deleted_at"),
        created_at=_timestamp(d.get("created_at"), "rule.created_at") or now,
        updated_at=_timestamp(d.get("updated_at"), "rule.updated_at") or now,
    )


PATCHABLE_FIELDS = frozenset({
    "name",
    "description",
    "enabled",
    "is_active",
    "automation_type",
    "execution_mode",
    "mode",
    "triggers",
    "conditions",
    "actions",
})


def apply_patch(rule: Rule, patch: Dict[str, Any]) -> Rule:
    """Partial update, validated the same way as a new rule."""
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise RuleValidationError(f"rule: fields cannot be changed: {sorted(unknown)}")

    doc = rule_to_dict(rule)
    if "is_active" in patch:
        doc["enabled"] = patch["is_active"]
    if "mode" in patch:
        doc["execution_mode"] = patch["mode"]
    doc.update({k: v for k, v in patch.items() if k not in ("is_active", "mode")})

    updated = rule_from_dict(doc, home_id=rule.home_id)
    return replace(updated, id=rule.id, created_at=rule.created_at, updated_at=utcnow())


def load_rules_from_yaml(path: str) -> List[Rule]:
    """
    Read a rules file (see module docstring).
    Missing file -> FileNotFoundError, broken rule -> RuleValidationError.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"rules file not found: {path}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    items = _require_list(_require_dict(data, "rules file").get("rules"), "rules")

    loaded: List[Rule] = []
    for idx, rd in enumerate(items):
        try:
            loaded.append(rule_from_dict(rd))
        except RuleValidationError as e:
            raise RuleValidationError(f"rules[{idx}]: {e}") from e
    return loaded


# ----------------------------------------------------------------------
# models -> plain dicts (API, JSON columns, event payloads)
# ----------------------------------------------------------------------
def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _plain(value: Any) -> Any:
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    return value


def trigger_to_dict(t: Trigger) -> Dict[str, Any]:
    if isinstance(t, ScheduleTrigger):
        return {"type": "schedule", "at": _plain(t.at), "days": list(t.days)}
    if isinstance(t, DeviceStateTrigger):
        return {"type": "device_state", "device_id": t.device_id, "state": t.state}
    if isinstance(t, SensorTrigger):
        return {
            "type": "sensor",
            "sensor_id": t.sensor_id,
            "operator": t.operator.value,
            "value": _plain(t.value),
        }
    if isinstance(t, LocationTrigger):
        return {"type": "location", "event": t.event, "user_id": t.user_id}
    return {}


def condition_to_dict(c: Condition) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": c.type.value}
    if isinstance(c, DeviceStateCondition):
        out["device_id"] = c.device_id
    elif isinstance(c, SensorValueCondition):
        out["sensor_id"] = c.sensor_id
    out["operator"] = c.operator.value
    out["value"] = _plain(c.value)
    return out


def _command_to_dict(c: DeviceCommand) -> Dict[str, Any]:
    return {"device_id": c.device_id, "command": c.command, "parameters": dict(c.parameters)}


def action_to_dict(a: Action) -> Dict[str, Any]:
    if isinstance(a, DeviceControlAction):
        return {
            "type": "device_control",
            "device_id": a.device_id,
            "command": a.command,
            "parameters": dict(a.parameters),
        }
    if isinstance(a, NotificationAction):
        return {
            "type": "notification",
            "message": a.message,
            "title": a.title,
            "severity": a.severity.value,
        }
    if isinstance(a, SceneAction):
        return {
            "type": "scene",
            "scene_id": a.scene_id,
            "commands": [_command_to_dict(c) for c in a.commands],
        }
    if isinstance(a, DelayAction):
        return {"type": "delay", "seconds": a.seconds}
    return {}


def rule_to_dict(rule: Rule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "home_id": rule.home_id,
        "name": rule.name,
        "description": rule.description,
        "automation_type": rule.automation_type.value,
        "enabled": rule.enabled,
        "execution_mode": rule.mode.value,
        "triggers": [trigger_to_dict(t) for t in rule.triggers],
        "conditions": [condition_to_dict(c) for c in rule.conditions],
        "actions": [action_to_dict(a) for a in rule.actions],
        "created_at": _iso(rule.created_at),
        "updated_at": _iso(rule.updated_at),
        "deleted_at": _iso(rule.deleted_at),
    }


def outcome_to_dict(o: ActionOutcome) -> Dict[str, Any]:
    return {
        "index": o.index,
        "action": o.action.type.value,
        "definition": action_to_dict(o.action),
        "status": o.status.value,
        "detail": o.detail,
        "timestamp": _iso(o.ts),
    }


def execution_to_dict(e: Execution) -> Dict[str, Any]:
    return {
        "id": e.id,
        "automation_id": e.rule_id,
        "home_id": e.home_id,
        "execution_status": e.status.value,
        "triggered_by": e.triggered_by,
        "trigger_context": e.trigger_context,
        "started_at": _iso(e.started_at),
        "completed_at": _iso(e.completed_at),
        "execution_result": e.result,
    }


def health_to_dict(h: RuleHealth) -> Dict[str, Any]:
    return {
        "automation_id": h.rule_id,
        "status": h.status,
        "window": h.window,
        "runs": h.runs,
        "success_count": h.success_count,
        "failure_count": h.failure_count,
        "in_progress_count": h.in_progress_count,
        "last_status": h.last_status.value if h.last_status else None,
        "last_started_at": _iso(h.last_started_at),
        "last_completed_at": _iso(h.last_completed_at),
        "last_error": h.last_error,
    }
