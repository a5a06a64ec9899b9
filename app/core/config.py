# app/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings

from app.core.validate_cfg import validate_cfg


class Settings(BaseSettings):
    # путь к основному YAML (можно переопределить переменной окружения CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # внутреннее хранилище загруженного YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Optional[Path] = PrivateAttr(default=None)

    # ───────── пути ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def set_cfg(self, data: Dict[str, Any]) -> None:
        validate_cfg(data or {})
        self._cfg = data or {}

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                self._cfg = yaml.safe_load(f) or {}
                validate_cfg(self._cfg)  # выбросит ValueError, если что-то не так
        else:
            self._cfg = {}

    # ───────── удобные секции ─────────
    @property
    def mqtt(self) -> Dict[str, Any]:
        sec = self._cfg.get("mqtt") or {}
        return {
            "enabled": bool(sec.get("enabled", False)),
            "host": sec.get("host", "127.0.0.1"),
            "port": int(sec.get("port", 1883)),
            "client_id": sec.get("client_id", "nexa-automation"),
            "base_topic": str(sec.get("base_topic", "/devices")).rstrip("/"),
            "qos": int(sec.get("qos", 0)),
            "retain": bool(sec.get("retain", False)),
        }

    @property
    def automation(self) -> Dict[str, Any]:
        sec = self._cfg.get("automation") or {}
        return {
            "store": str(sec.get("store", "sql")).strip().lower(),
            "rules_file": sec.get("rules_file", "data/rules.yaml"),
            "action_timeout_s": float(sec.get("action_timeout_s", 30)),
            "history_limit": int(sec.get("history_limit", 20)),
            "max_executions": int(sec.get("max_executions", 1000)),
        }

    @property
    def realtime(self) -> Dict[str, Any]:
        sec = self._cfg.get("realtime") or {}
        return {"queue_size": int(sec.get("queue_size", 100))}

    @property
    def db_url(self) -> str:
        return (self._cfg.get("db") or {}).get("url", "sqlite:///./data/data.db")


settings = Settings()
