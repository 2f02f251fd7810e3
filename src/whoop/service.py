"""Wiring for the WHOOP sync components.

``build_service`` assembles the client, token store, coordinator, webhook
pipeline and reconciliation scheduler from Settings and the sync config, on
PostgreSQL-backed stores when a database is configured and in-memory stores
otherwise.  The FastAPI lifespan owns the resulting ``WhoopSyncService``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from src.config import Settings
from src.whoop.base import TokenRecord
from src.whoop.client import WhoopClient
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.coordinator import ProactiveRefresher, TokenRefreshCoordinator
from src.whoop.signature import SignatureVerifier
from src.whoop.sync.dedup import InMemoryDedupWindow, PostgresDedupWindow, TraceDedupWindow
from src.whoop.sync.pipeline import WebhookPipeline
from src.whoop.sync.reconciliation import (
    CursorStore,
    InMemoryCursorStore,
    PostgresCursorStore,
    ReconciliationScheduler,
)
from src.whoop.sync.sink import InMemoryRecordSink, PostgresRecordSink, RecordSink
from src.whoop.token_store import InMemoryTokenStore, PostgresTokenStore, TokenStore

logger = logging.getLogger("whoopsync.service")


@dataclass
class WhoopSyncService:
    """Every long-lived WHOOP component of one process."""

    config: SyncConfig
    client: WhoopClient
    store: TokenStore
    coordinator: TokenRefreshCoordinator
    refresher: ProactiveRefresher
    dedup: TraceDedupWindow
    sink: RecordSink
    cursors: CursorStore
    pipeline: WebhookPipeline
    reconciler: ReconciliationScheduler

    async def start(self) -> None:
        await self.pipeline.start()
        if self.config.tokens.proactive.enabled:
            self.refresher.start()
        if self.config.reconciliation.enabled:
            self.reconciler.start()
        logger.info("WHOOP sync service started")

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.refresher.stop()
        await self.pipeline.stop()
        logger.info("WHOOP sync service stopped")

    async def connect(self, auth_code: str, redirect_uri: str) -> TokenRecord:
        """Finish the OAuth flow: exchange the code, resolve the member, store tokens."""
        tokens = await self.client.exchange_code(auth_code, redirect_uri)
        profile = await self.client.get_profile(tokens.access_token)
        return await self.coordinator.register(profile.user_id, tokens)

    async def disconnect(self, user_id: int) -> TokenRecord:
        """Revoke a member's tokens and forget their reconciliation cursors."""
        record = await self.coordinator.revoke(user_id)
        await self.cursors.delete_user(user_id)
        return record


def build_service(
    settings: Settings,
    sync_config: SyncConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    use_database: bool = False,
) -> WhoopSyncService:
    """Assemble a WhoopSyncService.

    Args:
        settings:     Application settings (credentials, endpoints).
        sync_config:  Operational tuning; the global sync config by default.
        http_client:  Shared httpx client for every WHOOP call.
        use_database: Use the PostgreSQL stores.  The pool must already be
                      initialized.

    Returns:
        An unstarted service.
    """
    config = sync_config or get_sync_config()

    client = WhoopClient(
        client_id=settings.whoop_client_id,
        client_secret=settings.whoop_client_secret,
        http_client=http_client,
        api_base=settings.whoop_api_base,
        token_url=settings.whoop_token_url,
        auth_url=settings.whoop_auth_url,
        timeout=settings.http_timeout_seconds,
    )

    store: TokenStore
    dedup: TraceDedupWindow
    sink: RecordSink
    cursors: CursorStore
    if use_database:
        store = PostgresTokenStore()
        dedup = PostgresDedupWindow(ttl_seconds=config.webhooks.dedup_ttl_seconds)
        sink = PostgresRecordSink()
        cursors = PostgresCursorStore()
    else:
        store = InMemoryTokenStore()
        dedup = InMemoryDedupWindow(
            ttl_seconds=config.webhooks.dedup_ttl_seconds,
            max_entries=config.webhooks.dedup_max_entries,
        )
        sink = InMemoryRecordSink()
        cursors = InMemoryCursorStore()
    logger.info("WHOOP sync storage: %s", "postgres" if use_database else "in-memory")

    coordinator = TokenRefreshCoordinator(
        store,
        client,
        refresh_margin=config.tokens.refresh_margin,
        backoff=config.backoff,
    )
    proactive = config.tokens.proactive
    refresher = ProactiveRefresher(
        coordinator,
        interval_seconds=proactive.interval_seconds,
        window=proactive.window,
        max_concurrent=proactive.max_concurrent,
    )
    pipeline = WebhookPipeline(
        SignatureVerifier(
            settings.whoop_client_secret,
            tolerance_seconds=config.webhooks.signature_tolerance_seconds,
        ),
        dedup,
        coordinator,
        client,
        sink,
        workers=config.webhooks.workers,
        queue_max_size=config.webhooks.queue_max_size,
    )
    recon = config.reconciliation
    reconciler = ReconciliationScheduler(
        coordinator,
        cursors,
        client,
        sink,
        intervals=recon.interval_seconds,
        initial_lookback=recon.initial_lookback,
        page_limit=recon.page_limit,
        max_concurrent=recon.max_concurrent,
    )

    return WhoopSyncService(
        config=config,
        client=client,
        store=store,
        coordinator=coordinator,
        refresher=refresher,
        dedup=dedup,
        sink=sink,
        cursors=cursors,
        pipeline=pipeline,
        reconciler=reconciler,
    )
