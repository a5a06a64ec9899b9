# app/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional

ALLOWED_STORES = {"sql", "memory"}


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    if isinstance(v, bool):
        raise ValueError(f"{name}: expected an integer, got {v!r}")
    try:
        iv = int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: expected an integer, got {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: must be <= {max_} (got {iv})")
    return iv


def _as_float(v, name, min_: Optional[float] = None) -> float:
    if isinstance(v, bool):
        raise ValueError(f"{name}: expected a number, got {v!r}")
    try:
        fv = float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: expected a number, got {v!r}")
    if min_ is not None and fv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {fv})")
    return fv


def _as_bool(v, name) -> bool:
    if isinstance(v, bool):
        return v
    # yaml may carry 'true'/'false'/1/0
    if isinstance(v, (int, float)) and v in (0, 1):
        return bool(v)
    if isinstance(v, str) and v.lower() in ("true", "false"):
        return v.lower() == "true"
    raise ValueError(f"{name}: must be true/false")


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    sec = cfg.get(key, {})
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ValueError(f"{key}: must be an object")
    return sec


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Raises ValueError with a readable message if the config is broken."""
    if not isinstance(cfg, dict):
        raise ValueError("root of the YAML must be an object")

    # ─── db ───
    db = _section(cfg, "db")
    if "url" in db:
        url = str(db.get("url") or "").strip()
        if not url:
            raise ValueError("db.url: must not be empty (e.g. sqlite:///./data/data.db)")

    # ─── mqtt ───
    mqtt = _section(cfg, "mqtt")
    enabled = _as_bool(mqtt.get("enabled", False), "mqtt.enabled")
    if enabled:
        host = str(mqtt.get("host", "")).strip()
        if not host:
            raise ValueError("mqtt.host: must not be empty when mqtt is enabled")
    _as_int(mqtt.get("port", 1883), "mqtt.port", 1, 65535)
    _as_int(mqtt.get("qos", 0), "mqtt.qos", 0, 2)
    if "retain" in mqtt:
        _as_bool(mqtt["retain"], "mqtt.retain")
    if "base_topic" in mqtt and not isinstance(mqtt["base_topic"], str):
        raise ValueError("mqtt.base_topic: must be a string")
    # client_id is taken as is

    # ─── automation ───
    auto = _section(cfg, "automation")
    store = str(auto.get("store", "sql")).strip().lower()
    if store not in ALLOWED_STORES:
        raise ValueError(f"automation.store: must be one of {sorted(ALLOWED_STORES)}")
    if "rules_file" in auto and not (auto["rules_file"] is None or isinstance(auto["rules_file"], str)):
        raise ValueError("automation.rules_file: must be a string or null")
    _as_float(auto.get("action_timeout_s", 30), "automation.action_timeout_s", 0.0)
    _as_int(auto.get("history_limit", 20), "automation.history_limit", 1)
    _as_int(auto.get("max_executions", 1000), "automation.max_executions", 1)

    # ─── realtime ───
    rt = _section(cfg, "realtime")
    _as_int(rt.get("queue_size", 100), "realtime.queue_size", 1)
