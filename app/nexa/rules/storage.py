# nexa/rules/storage.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .types import CommandResult, Execution, Rule


# ======================================================================
# 1. RULE STORE
# ======================================================================

class RuleStore(ABC):
    """
    Where automation rules live.
    Implementations:
      - in-memory (tests, bench runs, seeded from rules.yaml)
      - SQL database (sql_repositories.py)
    Soft-deleted rules are never returned.
    """

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[Rule]:
        """Rule by id, or None if absent or soft-deleted."""
        raise NotImplementedError

    @abstractmethod
    async def list(self, home_id: str, enabled: Optional[bool] = None) -> List[Rule]:
        """Rules of a home, newest first, optionally filtered by enabled flag."""
        raise NotImplementedError

    async def list_enabled(self, home_id: str) -> List[Rule]:
        return await self.list(home_id, enabled=True)

    @abstractmethod
    async def exists(self, rule_id: str) -> bool:
        """True if the id was ever stored, soft-deleted rules included."""
        raise NotImplementedError

    @abstractmethod
    async def save(self, rule: Rule) -> Rule:
        """Create or update."""
        raise NotImplementedError

    @abstractmethod
    async def soft_delete(self, rule_id: str) -> bool:
        """Mark as deleted. False if there was nothing to delete."""
        raise NotImplementedError


# ======================================================================
# 2. EXECUTION RECORDER
# ======================================================================

class ExecutionRecorder(ABC):
    """
    One record per run attempt.
    `update` may move an execution to a terminal status once; a terminal
    execution is never changed again.
    """

    @abstractmethod
    async def create(self, execution: Execution) -> str:
        raise NotImplementedError

    @abstractmethod
    async def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        """patch keys: status, completed_at, result"""
        raise NotImplementedError

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]:
        raise NotImplementedError

    @abstractmethod
    async def list_for_rule(self, rule_id: str, limit: int = 20) -> List[Execution]:
        """Newest first."""
        raise NotImplementedError


# ======================================================================
# 3. DEVICES
# ======================================================================

class DeviceCommandSender(ABC):
    """Sends one command to one device. The engine knows no device protocol."""

    @abstractmethod
    async def send(
        self,
        device_id: str,
        command: str,
        parameters: Dict[str, Any],
    ) -> CommandResult:
        raise NotImplementedError


class DeviceStateLookup(ABC):
    """Optional source of current device states for device_state conditions."""

    @abstractmethod
    async def get_state(self, device_id: str) -> Optional[Any]:
        raise NotImplementedError


def check_patch_allowed(current: Execution, patch: Dict[str, Any]) -> None:
    """Shared guard for recorders: terminal executions are frozen."""
    if current.status.is_terminal:
        raise ValueError(f"execution {current.id} is already {current.status.value}")
    unknown = set(patch) - {"status", "completed_at", "result"}
    if unknown:
        raise ValueError(f"unknown execution fields: {sorted(unknown)}")
