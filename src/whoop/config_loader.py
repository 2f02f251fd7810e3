"""Load, validate, and hot-reload the WHOOP sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; components built afterwards pick up the new values.

Usage::

    from src.whoop.config_loader import get_sync_config

    config = get_sync_config()
    margin = config.tokens.refresh_margin            # timedelta(seconds=60)
    every = config.reconciliation.interval_for(ResourceType.SLEEP)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from src.whoop.backoff import BackoffPolicy
from src.whoop.base import ResourceType

logger = logging.getLogger("whoopsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ProactiveRefreshConfig:
    """Background sweep that refreshes tokens before they expire."""

    enabled: bool
    interval_seconds: int
    window_seconds: int
    max_concurrent: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


@dataclass
class TokenConfig:
    """Token Refresh Coordinator settings."""

    refresh_margin_seconds: int
    proactive: ProactiveRefreshConfig

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.refresh_margin_seconds)


@dataclass
class WebhookConfig:
    """Webhook ingestion settings."""

    signature_tolerance_seconds: int
    dedup_ttl_seconds: int
    dedup_max_entries: int
    workers: int
    queue_max_size: int


@dataclass
class ReconciliationConfig:
    """Reconciliation sweep settings."""

    enabled: bool
    initial_lookback_days: int
    page_limit: int
    max_concurrent: int
    interval_seconds: dict[ResourceType, int] = field(default_factory=dict)

    def interval_for(self, resource_type: ResourceType) -> int:
        return self.interval_seconds.get(resource_type, 21600)

    @property
    def initial_lookback(self) -> timedelta:
        return timedelta(days=self.initial_lookback_days)


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:        Config schema version string.
        tokens:         Refresh margin and proactive refresh sweep.
        webhooks:       Signature tolerance, dedup window, worker pool.
        reconciliation: Sweep intervals, lookback, paging.
        backoff:        Retry policy for WHOOP API calls.
    """

    version: str
    tokens: TokenConfig
    webhooks: WebhookConfig
    reconciliation: ReconciliationConfig
    backoff: BackoffPolicy
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Applies defaults for optional fields and collects every error before
    raising, so one run reports all problems.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: Any, path: str, cast: type = int) -> Any:
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number < 0:
            errors.append(f"{path}.{key} = {number} must not be negative")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Tokens ──
    tok_raw = raw.get("tokens") or {}
    pr_raw = tok_raw.get("proactive_refresh") or {}
    proactive = ProactiveRefreshConfig(
        enabled=bool(pr_raw.get("enabled", True)),
        interval_seconds=_number(pr_raw, "interval_seconds", 3600, "tokens.proactive_refresh"),
        window_seconds=_number(pr_raw, "window_seconds", 4200, "tokens.proactive_refresh"),
        max_concurrent=_number(pr_raw, "max_concurrent", 5, "tokens.proactive_refresh"),
    )
    tokens = TokenConfig(
        refresh_margin_seconds=_number(tok_raw, "refresh_margin_seconds", 60, "tokens"),
        proactive=proactive,
    )
    if proactive.enabled and proactive.window_seconds < proactive.interval_seconds:
        logger.warning(
            "Proactive refresh window (%ds) is shorter than its interval (%ds); "
            "some tokens will expire between sweeps and refresh on demand.",
            proactive.window_seconds,
            proactive.interval_seconds,
        )

    # ── Webhooks ──
    wh_raw = raw.get("webhooks") or {}
    dd_raw = wh_raw.get("dedup") or {}
    webhooks = WebhookConfig(
        signature_tolerance_seconds=_number(wh_raw, "signature_tolerance_seconds", 300, "webhooks"),
        dedup_ttl_seconds=_number(dd_raw, "ttl_seconds", 86400, "webhooks.dedup"),
        dedup_max_entries=_number(dd_raw, "max_entries", 100000, "webhooks.dedup"),
        workers=_number(wh_raw, "workers", 4, "webhooks"),
        queue_max_size=_number(wh_raw, "queue_max_size", 10000, "webhooks"),
    )
    if webhooks.workers < 1:
        errors.append("webhooks.workers must be at least 1")

    # ── Reconciliation ──
    rc_raw = raw.get("reconciliation") or {}
    intervals_raw = rc_raw.get("interval_seconds") or {}
    intervals: dict[ResourceType, int] = {}
    if not isinstance(intervals_raw, dict):
        errors.append("reconciliation.interval_seconds must be a mapping of resource→seconds")
        intervals_raw = {}
    for name, seconds in intervals_raw.items():
        try:
            resource = ResourceType(name)
        except ValueError:
            errors.append(
                f"reconciliation.interval_seconds.{name} is not a known resource "
                f"({', '.join(r.value for r in ResourceType)})"
            )
            continue
        interval = _number(intervals_raw, name, 21600, "reconciliation.interval_seconds")
        if interval == 0:
            errors.append(f"reconciliation.interval_seconds.{name} must be positive")
        intervals[resource] = interval
    reconciliation = ReconciliationConfig(
        enabled=bool(rc_raw.get("enabled", True)),
        initial_lookback_days=_number(rc_raw, "initial_lookback_days", 30, "reconciliation"),
        page_limit=_number(rc_raw, "page_limit", 25, "reconciliation"),
        max_concurrent=_number(rc_raw, "max_concurrent", 5, "reconciliation"),
        interval_seconds=intervals,
    )
    if not 1 <= reconciliation.page_limit <= 25:
        errors.append(
            f"reconciliation.page_limit = {reconciliation.page_limit} is out of range [1, 25]"
        )

    # ── Backoff ──
    bo_raw = raw.get("backoff") or {}
    backoff = BackoffPolicy(
        max_attempts=_number(bo_raw, "max_attempts", 5, "backoff"),
        base_delay=_number(bo_raw, "base_delay_seconds", 1.0, "backoff", float),
        max_delay=_number(bo_raw, "max_delay_seconds", 60.0, "backoff", float),
        jitter=_number(bo_raw, "jitter", 0.3, "backoff", float),
    )
    if backoff.max_attempts < 1:
        errors.append("backoff.max_attempts must be at least 1")
    if not 0.0 <= backoff.jitter <= 1.0:
        errors.append(f"backoff.jitter = {backoff.jitter} is out of range [0.0, 1.0]")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        tokens=tokens,
        webhooks=webhooks,
        reconciliation=reconciliation,
        backoff=backoff,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config(path: Path | None = None) -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  ``path`` only matters on the first call.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config(path)
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
