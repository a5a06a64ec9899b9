# nexa/rules/errors.py
from __future__ import annotations


class AutomationError(Exception):
    """Base class for errors surfaced to the caller of the engine."""


class NotFound(AutomationError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class RuleDisabled(AutomationError):
    def __init__(self, rule_id: str) -> None:
        super().__init__(f"rule is disabled: {rule_id}")
        self.rule_id = rule_id


class RuleNotExecutable(AutomationError):
    """Rule has no actions; it may be stored as a draft but never run."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"rule has no actions: {rule_id}")
        self.rule_id = rule_id


class RuleValidationError(AutomationError, ValueError):
    """Rule document does not match the trigger/condition/action shapes."""
