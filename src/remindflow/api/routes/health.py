"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from remindflow.core.exceptions import ConfigurationError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready(request: Request):
    engine = request.app.state.engine
    try:
        policy = engine.config_source.snapshot()
    except ConfigurationError as exc:
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(exc)})
    return {
        "status": "ready",
        "scheduler": "running" if engine.scheduler.running else "stopped",
        "stages": policy.max_stages,
        "audit_pending": engine.audit.pending,
    }
