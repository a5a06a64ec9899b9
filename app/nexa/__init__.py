# app/nexa/__init__.py
"""
NEXA home automation: rules engine + realtime fan-out.

  - rules/        → evaluator, executor, orchestrator, stores
  - realtime/     → event bus and the /ws gateway
  - api/          → HTTP routes
  - rules_loader  → rule documents <-> models
  - runtime       → AutomationContext wiring
"""
