# nexa/rules/actions.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .storage import DeviceCommandSender
from .types import (
    Action,
    ActionOutcome,
    ActionStatus,
    CommandResult,
    DelayAction,
    DeviceControlAction,
    ExecutionMode,
    NotificationAction,
    SceneAction,
    utcnow,
)

log = logging.getLogger("automation")


# ---- callbacks provided from outside ----------------------------------

# In-app notification: home_id, payload -> number of receivers
NotifyFunc = Callable[[str, Dict[str, Any]], int]


class ActionExecutor:
    """
    Runs a rule's actions.

    No transport is wired in here: devices and notifications come in
    through the constructor. Every action gets an outcome; a failing
    action never stops the others and is never retried.
    """

    def __init__(
        self,
        *,
        devices: Optional[DeviceCommandSender] = None,
        notify: Optional[NotifyFunc] = None,
        action_timeout_s: Optional[float] = 30.0,
    ) -> None:
        self._devices = devices
        self._notify = notify
        self._timeout = action_timeout_s

    # --------------------------------------------------------------------- #
    # run a list of actions
    # --------------------------------------------------------------------- #
    async def execute(
        self,
        actions: Sequence[Action],
        mode: ExecutionMode,
        *,
        home_id: Optional[str] = None,
        rule_id: Optional[str] = None,
    ) -> List[ActionOutcome]:
        """
        sequential -> one after another, in declared order, failures recorded and skipped over.
        parallel   -> all started at once, joined when every one has settled.
        Outcomes come back in declared order in both modes.
        """
        if mode == ExecutionMode.PARALLEL:
            outcomes = await asyncio.gather(
                *(
                    self.execute_action(idx, act, home_id=home_id, rule_id=rule_id)
                    for idx, act in enumerate(actions)
                )
            )
            return list(outcomes)

        results: List[ActionOutcome] = []
        for idx, act in enumerate(actions):
            results.append(
                await self.execute_action(idx, act, home_id=home_id, rule_id=rule_id)
            )
        return results

    # --------------------------------------------------------------------- #
    # run one action
    # --------------------------------------------------------------------- #
    async def execute_action(
        self,
        index: int,
        action: Action,
        *,
        home_id: Optional[str] = None,
        rule_id: Optional[str] = None,
    ) -> ActionOutcome:
        started_at = utcnow()

        try:
            if isinstance(action, DeviceControlAction):
                res = await self._bounded(self._do_device_control(action))
            elif isinstance(action, SceneAction):
                res = await self._bounded(self._do_scene(action))
            elif isinstance(action, NotificationAction):
                res = self._do_notify(action, home_id, rule_id)
            elif isinstance(action, DelayAction):
                res = await self._do_delay(action)
            else:
                raise ValueError(f"Unsupported action: {action!r}")
        except asyncio.TimeoutError:
            detail = f"timed out after {self._timeout:g} s" if self._timeout else "timed out"
            res = CommandResult(success=False, detail=detail)
        except Exception as exc:  # noqa: BLE001
            # the action failed, the run goes on
            res = CommandResult(success=False, detail=str(exc) or exc.__class__.__name__)

        status = ActionStatus.SUCCESS if res.success else ActionStatus.FAILED
        if status == ActionStatus.FAILED:
            log.warning(
                "rule %s: action #%d %s failed: %s",
                rule_id,
                index,
                _preview(action),
                res.detail,
            )
        else:
            log.debug("rule %s: action #%d %s ok", rule_id, index, _preview(action))

        return ActionOutcome(
            index=index,
            action=action,
            status=status,
            ts=started_at,
            detail=res.detail,
        )

    # --------------------------------------------------------------------- #
    # concrete actions
    # --------------------------------------------------------------------- #
    async def _bounded(self, aw: Awaitable[CommandResult]) -> CommandResult:
        if self._timeout and self._timeout > 0:
            return await asyncio.wait_for(aw, timeout=self._timeout)
        return await aw

    def _require_devices(self) -> DeviceCommandSender:
        if self._devices is None:
            raise RuntimeError("device command sender is not configured")
        return self._devices

    async def _do_device_control(self, action: DeviceControlAction) -> CommandResult:
        devices = self._require_devices()
        return await devices.send(action.device_id, action.command, dict(action.parameters))

    async def _do_scene(self, action: SceneAction) -> CommandResult:
        devices = self._require_devices()
        failures: List[str] = []
        for cmd in action.commands:
            res = await devices.send(cmd.device_id, cmd.command, dict(cmd.parameters))
            if not res.success:
                failures.append(f"{cmd.device_id} {cmd.command}: {res.detail or 'failed'}")

        total = len(action.commands)
        if failures:
            return CommandResult(
                success=False,
                detail=f"scene {action.scene_id}: {total - len(failures)}/{total} ok; "
                + "; ".join(failures),
            )
        return CommandResult(success=True, detail=f"scene {action.scene_id}: {total}/{total} ok")

    def _do_notify(
        self,
        action: NotificationAction,
        home_id: Optional[str],
        rule_id: Optional[str],
    ) -> CommandResult:
        if self._notify is None:
            raise RuntimeError("notification channel is not configured")
        if not home_id:
            raise ValueError("notification needs the rule's home")

        payload = {
            "type": "automation",
            "automationId": rule_id,
            "title": action.title,
            "message": action.message,
            "severity": action.severity.value,
            "timestamp": utcnow().isoformat(),
        }
        delivered = self._notify(home_id, payload)
        return CommandResult(success=True, detail=f"notified {delivered} connection(s)")

    @staticmethod
    async def _do_delay(action: DelayAction) -> CommandResult:
        await asyncio.sleep(max(0.0, float(action.seconds)))
        return CommandResult(success=True, detail=f"waited {action.seconds:g} s")


def _preview(action: Action) -> str:
    """Short text for logs."""
    if isinstance(action, DeviceControlAction):
        return f"device {action.device_id} {action.command}"
    if isinstance(action, SceneAction):
        return f"scene {action.scene_id}"
    if isinstance(action, NotificationAction):
        return f"notify: {action.message}"
    if isinstance(action, DelayAction):
        return f"delay {action.seconds:g}s"
    return repr(action)
