"""Operator API for inspecting the reconciler and toggling it."""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Query
import structlog

from arbcheck import __version__
from arbcheck.config.settings import Settings
from arbcheck.models import format_timestamp
from arbcheck.reconcile.scheduler import RuntimeControl, Scheduler

log = structlog.get_logger(__name__)


def create_app(settings: Settings, control: RuntimeControl, scheduler: Scheduler) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Reconciler Operator API",
        description="Inspect reconciliation cycles and enable or disable the service",
        version=__version__,
    )
    started_at = time.time()

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": settings.app.name,
            "version": __version__,
            "endpoints": {
                "ping": "GET /ping",
                "health": "GET /health",
                "config": "GET /config",
                "last_cycle": "GET /cycles/last",
                "enable": "POST /actions/enable?reason=<text>",
                "disable": "POST /actions/disable?reason=<text>",
            },
        }

    @app.get("/ping")
    async def ping() -> dict[str, str]:
        return {"message": "pong"}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy" if scheduler.running else "stopped",
            "uptime_sec": time.time() - started_at,
            "enabled": control.enabled,
            "cycles": scheduler.cycle_count,
            "last_cycle_at": format_timestamp(scheduler.last_cycle_at),
            "last_error": scheduler.last_error,
        }

    @app.get("/config")
    async def config() -> dict[str, Any]:
        """Effective settings with credentials masked."""
        data = settings.public_dict()
        data["app"]["enabled"] = control.enabled
        return data

    @app.get("/cycles/last")
    async def last_cycle() -> dict[str, Any]:
        if scheduler.last_report is None:
            raise HTTPException(status_code=404, detail="no cycle has completed yet")
        return {"cycle": scheduler.cycle_count, **scheduler.last_report.to_dict()}

    @app.post("/actions/enable")
    async def enable(reason: str = Query(default="operator_api")) -> dict[str, Any]:
        was_enabled = control.enable()
        log.info("service_enabled", reason=reason, previously_enabled=was_enabled)
        return {"success": True, "enabled": True, "previously_enabled": was_enabled}

    @app.post("/actions/disable")
    async def disable(reason: str = Query(default="operator_api")) -> dict[str, Any]:
        was_enabled = control.disable()
        log.info("service_disabled", reason=reason, previously_enabled=was_enabled)
        return {"success": True, "enabled": False, "previously_enabled": was_enabled}

    return app
