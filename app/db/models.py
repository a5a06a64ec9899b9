# app/db/models.py
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

Base = declarative_base()


class AutomationRow(Base):
    __tablename__ = "automations"
    id = Column(String(64), primary_key=True)
    home_id = Column(String(64), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    automation_type = Column(String(32), default="device_triggered")
    is_active = Column(Boolean, default=True, index=True)
    execution_mode = Column(String(16), default="sequential")
    triggers = Column(JSON, default=list)
    conditions = Column(JSON, default=list)
    actions = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), index=True)
    updated_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)  # NULL = live


class AutomationExecutionRow(Base):
    __tablename__ = "automation_executions"
    seq = Column(Integer, primary_key=True, autoincrement=True)     # insertion order
    id = Column(String(64), unique=True, index=True, nullable=False)
    automation_id = Column(String(64), index=True, nullable=False)
    home_id = Column(String(64), index=True)
    execution_status = Column(String(16), default="in_progress")
    triggered_by = Column(String(64), default="manual")
    trigger_context = Column(JSON, default=dict)
    execution_result = Column(JSON, default=dict)
    started_at = Column(DateTime(timezone=True), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
