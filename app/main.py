# app/main.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from app.core.config import settings
from app.nexa.api.automations_api import router as automations_router
from app.nexa.api.events_api import router as events_router
from app.nexa.realtime.gateway import router as realtime_router
from app.nexa.runtime import AutomationContext, build_automation

log = logging.getLogger("web")


def create_app(automation: Optional[AutomationContext] = None) -> FastAPI:
    """
    automation: ready context (tests); None -> built from config.yaml at startup.
    """
    app = FastAPI(title="NEXA Automation")

    # ─────────────────────────────────────────────────────────────────────────
    # routers
    # ─────────────────────────────────────────────────────────────────────────
    app.include_router(automations_router)
    app.include_router(events_router)
    app.include_router(realtime_router)

    # ─────────────────────────────────────────────────────────────────────────
    # startup / shutdown
    # ─────────────────────────────────────────────────────────────────────────
    @app.on_event("startup")
    async def _startup():
        ctx = automation
        if ctx is None:
            # 1) YAML config
            settings.load_yaml_config()
            # 2) stores, bus, devices
            ctx = build_automation(settings)

        # 3) rules file, mqtt
        await ctx.start()
        app.state.automation = ctx
        log.info("automation api ready")

    @app.on_event("shutdown")
    async def _shutdown():
        ctx = getattr(app.state, "automation", None)
        if ctx is not None:
            ctx.close()

    return app


app = create_app()
