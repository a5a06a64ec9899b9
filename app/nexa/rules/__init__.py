# nexa/rules/__init__.py
"""
NEXA automation engine.

Contents:
  - types.py            → rules, triggers, conditions, actions, executions
  - errors.py           → error taxonomy
  - storage.py          → collaborator interfaces (rule store, recorder, devices)
  - repositories.py     → in-memory implementations
  - sql_repositories.py → SQLAlchemy implementations
  - evaluator.py        → condition checks
  - actions.py          → action executor
  - engine.py           → orchestrator (run_rule)
"""
from .actions import ActionExecutor
from .engine import AutomationOrchestrator
from .errors import (
    AutomationError,
    NotFound,
    RuleDisabled,
    RuleNotExecutable,
    RuleValidationError,
)
from .evaluator import RuleEvaluator
from .storage import DeviceCommandSender, DeviceStateLookup, ExecutionRecorder, RuleStore

__all__ = [
    "ActionExecutor",
    "AutomationOrchestrator",
    "AutomationError",
    "NotFound",
    "RuleDisabled",
    "RuleNotExecutable",
    "RuleValidationError",
    "RuleEvaluator",
    "DeviceCommandSender",
    "DeviceStateLookup",
    "ExecutionRecorder",
    "RuleStore",
]
