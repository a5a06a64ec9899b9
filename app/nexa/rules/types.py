# nexa/rules/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


WEEKDAYS: Tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


# === 1. ENUMS ================================================================

class ExecutionMode(Enum):
    """How the executor consumes a rule's action list."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class AutomationType(Enum):
    TIME_BASED = "time_based"
    DEVICE_TRIGGERED = "device_triggered"
    LOCATION_BASED = "location_based"
    SCENE = "scene"


class TriggerType(Enum):
    SCHEDULE = "schedule"
    DEVICE_STATE = "device_state"
    SENSOR = "sensor"
    LOCATION = "location"


class ConditionType(Enum):
    DEVICE_STATE = "device_state"
    TIME_RANGE = "time_range"
    DAY_OF_WEEK = "day_of_week"
    SENSOR_VALUE = "sensor_value"


class ConditionOperator(Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"        # value = [low, high], inclusive


class ActionType(Enum):
    DEVICE_CONTROL = "device_control"
    NOTIFICATION = "notification"
    SCENE = "scene"
    DELAY = "delay"


class NotificationSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ActionStatus(Enum):
    """Outcome of a single action."""
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionStatus(Enum):
    """
    Stored execution status.
    in_progress is the orchestrator's Running state, success is Completed,
    failed is Failed. The last two are terminal.
    """
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.IN_PROGRESS


# === 2. TRIGGERS =============================================================
# Triggers are descriptive only: they are stored and handed back to the
# caller, matching them against live events happens outside the engine.

@dataclass(frozen=True)
class ScheduleTrigger:
    at: time
    days: Tuple[str, ...] = ()   # empty = every day

    @property
    def type(self) -> TriggerType:
        return TriggerType.SCHEDULE


@dataclass(frozen=True)
class DeviceStateTrigger:
    device_id: str
    state: str

    @property
    def type(self) -> TriggerType:
        return TriggerType.DEVICE_STATE


@dataclass(frozen=True)
class SensorTrigger:
    sensor_id: str
    operator: ConditionOperator
    value: Any

    @property
    def type(self) -> TriggerType:
        return TriggerType.SENSOR


@dataclass(frozen=True)
class LocationTrigger:
    event: str                   # "arrive" | "leave"
    user_id: Optional[str] = None

    @property
    def type(self) -> TriggerType:
        return TriggerType.LOCATION


Trigger = Union[ScheduleTrigger, DeviceStateTrigger, SensorTrigger, LocationTrigger]


# === 3. CONDITIONS ===========================================================

@dataclass(frozen=True)
class DeviceStateCondition:
    """
    Compares the current state of a device, e.g.
      device_id=thermostat-1, operator=equals, value="on"
    """
    device_id: str
    operator: ConditionOperator
    value: Any

    @property
    def type(self) -> ConditionType:
        return ConditionType.DEVICE_STATE


@dataclass(frozen=True)
class SensorValueCondition:
    sensor_id: str
    operator: ConditionOperator
    value: Any

    @property
    def type(self) -> ConditionType:
        return ConditionType.SENSOR_VALUE


@dataclass(frozen=True)
class TimeRangeCondition:
    """
    Compares the local time of day. For `between` the value is a pair of
    times; a start later than the end wraps midnight (22:00 -> 06:00).
    """
    operator: ConditionOperator
    value: Any

    @property
    def type(self) -> ConditionType:
        return ConditionType.TIME_RANGE


@dataclass(frozen=True)
class DayOfWeekCondition:
    operator: ConditionOperator
    value: Any                   # "sat" or ("sat", "sun")

    @property
    def type(self) -> ConditionType:
        return ConditionType.DAY_OF_WEEK


Condition = Union[
    DeviceStateCondition,
    SensorValueCondition,
    TimeRangeCondition,
    DayOfWeekCondition,
]


# === 4. ACTIONS ==============================================================

@dataclass(frozen=True)
class DeviceCommand:
    device_id: str
    command: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceControlAction:
    device_id: str
    command: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> ActionType:
        return ActionType.DEVICE_CONTROL


@dataclass(frozen=True)
class NotificationAction:
    message: str
    title: Optional[str] = None
    severity: NotificationSeverity = NotificationSeverity.INFO

    @property
    def type(self) -> ActionType:
        return ActionType.NOTIFICATION


@dataclass(frozen=True)
class SceneAction:
    scene_id: str
    commands: Tuple[DeviceCommand, ...] = ()

    @property
    def type(self) -> ActionType:
        return ActionType.SCENE


@dataclass(frozen=True)
class DelayAction:
    seconds: float

    @property
    def type(self) -> ActionType:
        return ActionType.DELAY


Action = Union[DeviceControlAction, NotificationAction, SceneAction, DelayAction]


@dataclass
class CommandResult:
    """What the device command collaborator reports back."""
    success: bool
    detail: Optional[str] = None


@dataclass
class ActionOutcome:
    """Result of one action, in the rule's declared order."""
    index: int
    action: Action
    status: ActionStatus
    ts: datetime
    detail: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == ActionStatus.FAILED


# === 5. RULE =================================================================

@dataclass
class Rule:
    """Automation rule."""
    id: str
    home_id: str
    name: str
    enabled: bool = True
    triggers: List[Trigger] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    automation_type: AutomationType = AutomationType.DEVICE_TRIGGERED
    description: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_executable(self) -> bool:
        # zero actions is a valid draft, but never runs
        return bool(self.actions)


# === 6. EVALUATION ===========================================================

@dataclass
class EvaluationContext:
    """Values the evaluator may need to check conditions."""
    trigger_source: str = "manual"
    device_states: Dict[str, Any] = field(default_factory=dict)
    sensor_values: Dict[str, Any] = field(default_factory=dict)
    now: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_trigger_context(
        cls,
        trigger_source: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> "EvaluationContext":
        """
        Build from the free-form trigger context of an invocation.
        Accepts both snake_case and camelCase keys, anything else lands in extra.
        """
        ctx = dict(context or {})
        device_states = ctx.pop("device_states", None) or ctx.pop("deviceStates", None) or {}
        sensor_values = ctx.pop("sensor_values", None) or ctx.pop("sensorValues", None) or {}
        now_raw = ctx.pop("now", None)

        now: Optional[datetime] = None
        if isinstance(now_raw, datetime):
            now = now_raw
        elif isinstance(now_raw, str) and now_raw:
            try:
                now = datetime.fromisoformat(now_raw.replace("Z", "+00:00"))
            except ValueError:
                now = None

        return cls(
            trigger_source=trigger_source,
            device_states=dict(device_states),
            sensor_values=dict(sensor_values),
            now=now,
            extra=ctx,
        )


@dataclass
class Evaluation:
    should_run: bool
    actions: List[Action] = field(default_factory=list)
    blocking_condition: Optional[int] = None
    unresolved: List[int] = field(default_factory=list)


# === 7. EXECUTION ============================================================

@dataclass
class Execution:
    """Durable record of one run attempt of a rule."""
    id: str
    rule_id: str
    home_id: str
    status: ExecutionStatus
    triggered_by: str
    trigger_context: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleHealth:
    """
    Summary of the recent runs of one rule:
      healthy  -> no failures in the window
      degraded -> some failures, but the last finished run succeeded
      failing  -> the last finished run failed
      unknown  -> no finished runs yet
    """
    rule_id: str
    status: str
    window: int
    runs: int = 0
    success_count: int = 0
    failure_count: int = 0
    in_progress_count: int = 0
    last_status: Optional[ExecutionStatus] = None
    last_started_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
