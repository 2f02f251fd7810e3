"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.whoop.service import WhoopSyncService


def get_whoop_service(request: Request) -> WhoopSyncService:
    """Return the WHOOP sync service the lifespan stored on the app.

    Raises 503 while the app is starting up or shutting down.
    """
    service: WhoopSyncService | None = getattr(request.app.state, "whoop", None)
    if service is None:
        raise HTTPException(status_code=503, detail="WHOOP sync service not running")
    return service


# Annotated shortcuts for route signatures
WhoopService = Annotated[WhoopSyncService, Depends(get_whoop_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
