# app/nexa/runtime.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import Settings
from app.nexa.realtime.bus import EventBus
from app.nexa.rules.actions import ActionExecutor
from app.nexa.rules.engine import AutomationOrchestrator
from app.nexa.rules.evaluator import RuleEvaluator
from app.nexa.rules.repositories import (
    InMemoryDeviceRegistry,
    InMemoryExecutionRecorder,
    InMemoryRuleStore,
)
from app.nexa.rules.storage import (
    DeviceCommandSender,
    DeviceStateLookup,
    ExecutionRecorder,
    RuleStore,
)
from app.nexa.rules_loader import load_rules_from_yaml

log = logging.getLogger("automation")


class AutomationContext:
    """
    Everything the automation side of the app needs, in one place:
    - rule store + execution recorder
    - event bus (one per process, lives as long as the app)
    - device commands (MQTT or the in-memory stand-in)
    - evaluator, executor, orchestrator

    Created at startup, stored on app.state, closed at shutdown.
    """

    def __init__(
        self,
        *,
        store: RuleStore,
        recorder: ExecutionRecorder,
        devices: Optional[DeviceCommandSender] = None,
        device_states: Optional[DeviceStateLookup] = None,
        bus: Optional[EventBus] = None,
        action_timeout_s: Optional[float] = 30.0,
        history_limit: int = 20,
        queue_size: int = 100,
        rules_file: Optional[str] = None,
        mqtt: Any = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.devices = devices
        self.bus = bus or EventBus()
        self.history_limit = history_limit
        self.queue_size = queue_size
        self.rules_file = rules_file
        self.mqtt = mqtt

        if device_states is None and isinstance(devices, DeviceStateLookup):
            device_states = devices
        self.device_states = device_states

        self.evaluator = RuleEvaluator()
        self.executor = ActionExecutor(
            devices=devices,
            notify=self.bus.emit_alert,
            action_timeout_s=action_timeout_s,
        )
        self.orchestrator = AutomationOrchestrator(
            rules=store,
            recorder=recorder,
            executor=self.executor,
            evaluator=self.evaluator,
            bus=self.bus,
            device_states=device_states,
        )

    # ------------------------------------------------------------------ #
    # rules file
    # ------------------------------------------------------------------ #
    async def reload_rules(self, path: Optional[str] = None) -> int:
        """
        Seed the store from the YAML file: only ids the store has never seen
        are added, so API edits and soft deletes survive a reload.
        Returns how many rules were added.
        Missing file -> 0. Broken file -> RuleValidationError, nothing saved.
        """
        path = path or self.rules_file
        if not path or not Path(path).exists():
            log.info("rules file %s not found, nothing to load", path)
            return 0

        rules = load_rules_from_yaml(path)
        added = 0
        for rule in rules:
            if await self.store.exists(rule.id):
                log.debug("rule %s already known, kept as stored", rule.id)
                continue
            await self.store.save(rule)
            added += 1
        log.info("seeded %d of %d rule(s) from %s", added, len(rules), path)
        return added

    # ------------------------------------------------------------------ #
    # inbound events
    # ------------------------------------------------------------------ #
    def device_state_changed(self, home_id: Optional[str], device_id: str, state: Any) -> int:
        if isinstance(self.devices, InMemoryDeviceRegistry):
            self.devices.set_state(device_id, state)
        return self.bus.emit_device_state_change(home_id, device_id, state)

    def raise_alert(self, home_id: str, alert: Dict[str, Any]) -> int:
        return self.bus.emit_alert(home_id, alert)

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        try:
            await self.reload_rules()
        except Exception:
            # the app still comes up; POST /api/automation/reload reports the problem
            log.exception("rules file %s could not be loaded", self.rules_file)

        if self.mqtt is not None:
            try:
                self.mqtt.connect()
            except Exception as e:
                logging.getLogger("mqtt").error("mqtt connect error (non-fatal): %s", e)

    def close(self) -> None:
        if self.mqtt is not None:
            try:
                self.mqtt.close()
            except Exception as e:
                logging.getLogger("mqtt").warning("mqtt close error: %s", e)
        self.bus.close()


def build_automation(settings: Settings, *, session_factory=None) -> AutomationContext:
    """
    Wire the context from the YAML config:
      automation.store = sql    -> SQLAlchemy store/recorder (tables created here)
      automation.store = memory -> dict-backed store/recorder
      mqtt.enabled              -> device commands over MQTT, else in-memory stand-in
    """
    auto = settings.automation
    bus = EventBus()

    if auto["store"] == "memory":
        store: RuleStore = InMemoryRuleStore()
        recorder: ExecutionRecorder = InMemoryExecutionRecorder(max_entries=auto["max_executions"])
    else:
        from app.db.session import get_session_factory, init_db
        from app.nexa.rules.sql_repositories import SqlExecutionRecorder, SqlRuleStore

        if session_factory is None:
            init_db()
            session_factory = get_session_factory()
        store = SqlRuleStore(session_factory)
        recorder = SqlExecutionRecorder(session_factory)

    mqtt_conf = settings.mqtt
    bridge = None
    if mqtt_conf["enabled"]:
        from app.services.mqtt_bridge import MqttBridge, MqttDeviceCommands

        bridge = MqttBridge(mqtt_conf)
        devices: DeviceCommandSender = MqttDeviceCommands(bridge, on_state=bus.emit_device_state_change)
        devices.attach()
    else:
        devices = InMemoryDeviceRegistry()

    log.info(
        "automation: store=%s, devices=%s, action timeout=%ss",
        auto["store"],
        "mqtt" if bridge is not None else "in-memory",
        auto["action_timeout_s"],
    )

    return AutomationContext(
        store=store,
        recorder=recorder,
        devices=devices,
        bus=bus,
        action_timeout_s=auto["action_timeout_s"],
        history_limit=auto["history_limit"],
        queue_size=settings.realtime["queue_size"],
        rules_file=auto["rules_file"],
        mqtt=bridge,
    )
