"""Tests for the YAML settings layer and runtime wiring."""

import pytest

from app.core.config import Settings
from app.core.validate_cfg import validate_cfg
from app.nexa.rules.repositories import (
    InMemoryDeviceRegistry,
    InMemoryExecutionRecorder,
    InMemoryRuleStore,
)
from app.nexa.runtime import build_automation


def test_defaults_without_a_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "missing.yaml"))
    s = Settings()
    s.load_yaml_config()

    assert s.db_url == "sqlite:///./data/data.db"
    assert s.mqtt["enabled"] is False
    assert s.mqtt["base_topic"] == "/devices"
    assert s.automation == {
        "store": "sql",
        "rules_file": "data/rules.yaml",
        "action_timeout_s": 30.0,
        "history_limit": 20,
        "max_executions": 1000,
    }
    assert s.realtime == {"queue_size": 100}


def test_yaml_file_is_read(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "automation:\n  store: memory\n  action_timeout_s: 5\nrealtime:\n  queue_size: 10\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CONFIG_FILE", str(cfg))
    s = Settings()
    s.load_yaml_config()

    assert s.automation["store"] == "memory"
    assert s.automation["action_timeout_s"] == 5.0
    assert s.realtime["queue_size"] == 10


def test_broken_yaml_config_is_rejected(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("mqtt:\n  port: 99999\n", encoding="utf-8")
    monkeypatch.setenv("CONFIG_FILE", str(cfg))

    with pytest.raises(ValueError, match="mqtt.port"):
        Settings().load_yaml_config()


@pytest.mark.parametrize(
    "cfg, field",
    [
        ({"automation": {"store": "redis"}}, "automation.store"),
        ({"automation": {"action_timeout_s": -1}}, "automation.action_timeout_s"),
        ({"automation": {"history_limit": 0}}, "automation.history_limit"),
        ({"realtime": {"queue_size": "many"}}, "realtime.queue_size"),
        ({"mqtt": {"enabled": True, "host": ""}}, "mqtt.host"),
        ({"db": {"url": ""}}, "db.url"),
        ({"mqtt": []}, "mqtt"),
    ],
)
def test_validate_cfg_names_the_field(cfg, field):
    with pytest.raises(ValueError) as exc:
        validate_cfg(cfg)

    assert str(exc.value).startswith(field)


def test_validate_cfg_accepts_a_full_config():
    validate_cfg(
        {
            "db": {"url": "sqlite:///./data/data.db"},
            "mqtt": {"enabled": True, "host": "broker", "port": 1883, "qos": 1, "retain": False},
            "automation": {"store": "sql", "rules_file": "data/rules.yaml", "action_timeout_s": 10},
            "realtime": {"queue_size": 50},
        }
    )


def test_memory_store_wiring(tmp_path):
    s = Settings()
    s.set_cfg(
        {
            "automation": {
                "store": "memory",
                "rules_file": str(tmp_path / "rules.yaml"),
                "max_executions": 5,
                "action_timeout_s": 2,
            },
            "realtime": {"queue_size": 7},
        }
    )

    ctx = build_automation(s)

    assert isinstance(ctx.store, InMemoryRuleStore)
    assert isinstance(ctx.recorder, InMemoryExecutionRecorder)
    assert isinstance(ctx.devices, InMemoryDeviceRegistry)
    assert ctx.device_states is ctx.devices
    assert ctx.queue_size == 7
    assert ctx.mqtt is None
