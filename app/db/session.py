# app/db/session.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.models import Base  # важно, чтобы модели были импортированы


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite:///./data/data.db  → ./data
    prefix = "sqlite:///"
    if db_url.startswith(prefix):
        fs_path = db_url[len(prefix):]
        if fs_path in ("", ":memory:"):
            return
        Path(fs_path).resolve().parent.mkdir(parents=True, exist_ok=True)


# создаём при первом обращении, уже после загрузки YAML
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        db_url = settings.db_url
        _ensure_sqlite_dir(db_url)
        kwargs = {}
        if db_url.startswith("sqlite"):
            # сессии работают из рабочих потоков (asyncio.to_thread)
            kwargs["connect_args"] = {"check_same_thread": False}
        _engine = create_engine(db_url, future=True, **kwargs)
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(), future=True)
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Создать таблицы, если их ещё нет."""
    Base.metadata.create_all(bind=engine or get_engine())


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
