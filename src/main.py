"""Whoop Sync: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from src.config import get_settings
from src.routers import health, webhooks, whoop
from src.services.database import close_pool, ensure_schema, init_pool
from src.whoop.config_loader import get_sync_config
from src.whoop.service import build_service

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("whoopsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    sync_config = get_sync_config(Path(settings.sync_config_path) if settings.sync_config_path else None)

    use_database = bool(settings.database_url)
    if use_database:
        await init_pool(settings)
        await ensure_schema()

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
        service = build_service(
            settings,
            sync_config=sync_config,
            http_client=http_client,
            use_database=use_database,
        )
        app.state.whoop = service
        await service.start()
        try:
            yield
        finally:
            await service.stop()
            if use_database:
                await close_pool()
    logger.info("%s shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Keeps WHOOP recovery, sleep and workout data in sync via "
            "webhooks, token refresh and periodic reconciliation."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(whoop.router, prefix=v1_prefix)

    return app


app = create_app()
