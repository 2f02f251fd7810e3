"""WHOOP Sync: token lifecycle, webhook ingestion and reconciliation.

Keeps a local copy of WHOOP recovery, sleep and workout data current for every
connected member while never losing access to a member's account.

Subpackages:
    sync/      — Webhook pipeline, reconciliation scheduler, dedup window, sink

Core modules:
    base          — Token records, events, cursors and resource types
    errors        — Error taxonomy shared by every component
    signature     — Webhook HMAC-SHA256 signature verification
    client        — Async WHOOP API client with per-endpoint Retry-After gates
    backoff       — Exponential backoff with jitter
    token_store   — Durable token storage (in-memory and PostgreSQL)
    coordinator   — Single-flight token refresh and the proactive refresh sweep
    config_loader — Load/validate/hot-reload sync_config.yaml
    service       — Wires everything together for the FastAPI lifespan
"""

from src.whoop.base import (
    EventType,
    OAuthTokens,
    ReconciliationCursor,
    ResourceType,
    TokenRecord,
    TokenState,
    WebhookEvent,
)
from src.whoop.config_loader import SyncConfig, get_sync_config

__all__ = [
    "EventType",
    "OAuthTokens",
    "ReconciliationCursor",
    "ResourceType",
    "TokenRecord",
    "TokenState",
    "WebhookEvent",
    "SyncConfig",
    "get_sync_config",
]
