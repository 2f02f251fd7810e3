"""Health check endpoint, public and unauthenticated."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("whoopsync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Reports database connectivity when a database is configured, and the
    webhook dispatch backlog.
    """
    settings = get_settings()
    database = "disabled"
    if settings.database_url:
        database = "unreachable"
        try:
            pool = get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            database = "connected"
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)

    service = getattr(request.app.state, "whoop", None)
    healthy = service is not None and database != "unreachable"

    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
        "webhook_queue": service.pipeline.queue_size if service is not None else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
