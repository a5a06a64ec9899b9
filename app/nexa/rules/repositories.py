# nexa/rules/repositories.py
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from .storage import (
    DeviceCommandSender,
    DeviceStateLookup,
    ExecutionRecorder,
    RuleStore,
    check_patch_allowed,
)
from .types import CommandResult, Execution, Rule, utcnow

log = logging.getLogger("automation")


# ======================================================================
# 1. IN-MEMORY RULE STORE
# ======================================================================

class InMemoryRuleStore(RuleStore):
    """
    Rules kept in a dict.
    Good for:
      - unit tests,
      - bench runs seeded from rules.yaml.
    """

    def __init__(self) -> None:
        self._rules: Dict[str, Rule] = {}
        self._lock = RLock()

    async def get(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None or rule.is_deleted:
            return None
        return rule

    async def list(self, home_id: str, enabled: Optional[bool] = None) -> List[Rule]:
        with self._lock:
            rules = [
                r for r in self._rules.values()
                if r.home_id == home_id and not r.is_deleted
            ]
        if enabled is not None:
            rules = [r for r in rules if r.enabled == enabled]
        rules.sort(key=lambda r: r.created_at, reverse=True)
        return rules

    async def exists(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._rules

    async def save(self, rule: Rule) -> Rule:
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    async def soft_delete(self, rule_id: str) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or rule.is_deleted:
                return False
            rule.deleted_at = utcnow()
            return True


# ======================================================================
# 2. IN-MEMORY EXECUTION RECORDER
# ======================================================================

class InMemoryExecutionRecorder(ExecutionRecorder):
    """
    Keeps the last N executions (default 1000); the oldest are dropped first.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._items: "OrderedDict[str, Execution]" = OrderedDict()
        self._lock = RLock()

    async def create(self, execution: Execution) -> str:
        with self._lock:
            self._items[execution.id] = replace(execution, result=dict(execution.result))
            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
        return execution.id

    async def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            current = self._items.get(execution_id)
            if current is None:
                raise KeyError(execution_id)
            check_patch_allowed(current, patch)
            self._items[execution_id] = replace(current, **patch)

    async def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            return self._items.get(execution_id)

    async def list_for_rule(self, rule_id: str, limit: int = 20) -> List[Execution]:
        with self._lock:
            items = [e for e in reversed(self._items.values()) if e.rule_id == rule_id]
        return items[:limit]


# ======================================================================
# 3. IN-MEMORY DEVICES
# ======================================================================

class InMemoryDeviceRegistry(DeviceCommandSender, DeviceStateLookup):
    """
    Stand-in for a device fleet when MQTT is switched off.
    Every command is logged and accepted; the last command per device is
    remembered as its state, and states can also be set from outside
    (e.g. device:state-change events).
    """

    def __init__(self) -> None:
        self._states: Dict[str, Any] = {}
        self._sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = RLock()

    async def send(
        self,
        device_id: str,
        command: str,
        parameters: Dict[str, Any],
    ) -> CommandResult:
        log.info("DEVICE COMMAND (no transport): %s <- %s %s", device_id, command, parameters)
        with self._lock:
            self._sent.append((device_id, command, dict(parameters)))
            self._states[device_id] = command
        return CommandResult(success=True, detail="accepted (no transport configured)")

    async def get_state(self, device_id: str) -> Optional[Any]:
        with self._lock:
            return self._states.get(device_id)

    def set_state(self, device_id: str, state: Any) -> None:
        with self._lock:
            self._states[device_id] = state

    @property
    def sent(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        with self._lock:
            return list(self._sent)
