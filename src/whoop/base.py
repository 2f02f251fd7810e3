"""Core data models for the WHOOP token lifecycle and webhook ingestion.

These types are shared by the token store, refresh coordinator, webhook
pipeline, and reconciliation scheduler.  They carry no I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum

logger = logging.getLogger("whoopsync.whoop")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / token state
# ---------------------------------------------------------------------------


class TokenState(str, Enum):
    """Lifecycle state of a stored TokenRecord."""

    ACTIVE = "active"
    REFRESHING = "refreshing"
    REVOKED = "revoked"
    INVALID = "invalid"

    @property
    def is_terminal(self) -> bool:
        """REVOKED and INVALID can only be left by re-authorizing."""
        return self in (TokenState.REVOKED, TokenState.INVALID)


@dataclass
class OAuthTokens:
    """Token set returned by the WHOOP token endpoint.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Single-use token for obtaining the next access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "bearer".
        scopes:        Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    token_type: str = "bearer"
    scopes: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class TokenRecord:
    """Durable per-user token state.

    Attributes:
        user_id:       WHOOP member id.
        access_token:  Current bearer token.
        refresh_token: Current refresh token (invalidated by WHOOP once used).
        expires_at:    UTC datetime when access_token expires.
        scopes:        Granted scopes.
        state:         Lifecycle state.
        updated_at:    Last time the record was written.
    """

    user_id: int
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: frozenset[str] = field(default_factory=frozenset)
    state: TokenState = TokenState.ACTIVE
    updated_at: datetime = field(default_factory=utc_now)

    def is_valid_for(self, margin: timedelta, now: datetime | None = None) -> bool:
        """Return True if the token is ACTIVE and outlives ``now + margin``."""
        if self.state is not TokenState.ACTIVE:
            return False
        return self.expires_at - margin > (now or utc_now())

    def with_state(self, state: TokenState) -> TokenRecord:
        return replace(self, state=state, updated_at=utc_now())

    def with_tokens(self, tokens: OAuthTokens) -> TokenRecord:
        """Return the ACTIVE record that replaces this one after a refresh."""
        return replace(
            self,
            access_token=tokens.access_token,
            # WHOOP always rotates; keep the old value only if a response omits it
            refresh_token=tokens.refresh_token or self.refresh_token,
            expires_at=tokens.expires_at,
            scopes=tokens.scopes or self.scopes,
            state=TokenState.ACTIVE,
            updated_at=utc_now(),
        )

    def __repr__(self) -> str:
        return (
            f"TokenRecord(user_id={self.user_id}, state={self.state.value}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


# ---------------------------------------------------------------------------
# Resources and webhook events
# ---------------------------------------------------------------------------


class ResourceType(str, Enum):
    """WHOOP data resources that emit webhooks and are reconciled."""

    RECOVERY = "recovery"
    SLEEP = "sleep"
    WORKOUT = "workout"

    @property
    def collection_path(self) -> str:
        return _COLLECTION_PATHS[self]

    def record_path(self, object_id: str | int) -> str:
        return _RECORD_PATHS[self].format(id=object_id)

    @property
    def id_field(self) -> str:
        """Field that identifies a record of this type in API responses."""
        # Recovery has no id of its own; it hangs off the cycle
        return "cycle_id" if self is ResourceType.RECOVERY else "id"


_COLLECTION_PATHS: dict[ResourceType, str] = {
    ResourceType.RECOVERY: "/v1/recovery",
    ResourceType.SLEEP: "/v1/activity/sleep",
    ResourceType.WORKOUT: "/v1/activity/workout",
}

_RECORD_PATHS: dict[ResourceType, str] = {
    ResourceType.RECOVERY: "/v1/cycle/{id}/recovery",
    ResourceType.SLEEP: "/v1/activity/sleep/{id}",
    ResourceType.WORKOUT: "/v1/activity/workout/{id}",
}


class EventType(str, Enum):
    """Webhook event types WHOOP delivers."""

    RECOVERY_UPDATED = "recovery.updated"
    RECOVERY_DELETED = "recovery.deleted"
    WORKOUT_UPDATED = "workout.updated"
    WORKOUT_DELETED = "workout.deleted"
    SLEEP_UPDATED = "sleep.updated"
    SLEEP_DELETED = "sleep.deleted"

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType(self.value.split(".", 1)[0])

    @property
    def is_deletion(self) -> bool:
        return self.value.endswith(".deleted")


@dataclass(frozen=True)
class WebhookEvent:
    """One verified, parsed webhook notification.

    Attributes:
        user_id:     WHOOP member id the change belongs to.
        object_id:   Id of the changed resource.
        event_type:  What changed.
        trace_id:    Dedup key; WHOOP may deliver the same trace more than once.
        received_at: UTC receipt time.
    """

    user_id: int
    object_id: str
    event_type: EventType
    trace_id: str
    received_at: datetime = field(default_factory=utc_now)

    @property
    def resource_type(self) -> ResourceType:
        return self.event_type.resource_type

    @property
    def dispatch_key(self) -> tuple[str, str, int]:
        return (self.event_type.value, self.object_id, self.user_id)


@dataclass
class ReconciliationCursor:
    """Per-user, per-resource watermark for incremental reconciliation.

    Attributes:
        user_id:       WHOOP member id.
        resource_type: Resource the watermark applies to.
        last_checked:  Latest ``updated_at`` observed by a completed sweep.
        last_run_at:   When the last completed sweep started.
    """

    user_id: int
    resource_type: ResourceType
    last_checked: datetime
    last_run_at: datetime | None = None


@dataclass
class CollectionPage:
    """One page of a WHOOP collection response."""

    records: list[dict] = field(default_factory=list)
    next_token: str | None = None

    @property
    def is_last(self) -> bool:
        return not self.next_token


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string to an aware UTC datetime.

    Naive strings are assumed UTC.  Returns None if the value is None or
    unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def record_id(resource_type: ResourceType, record: dict) -> str | None:
    """Return the identifying value of an API record as a string."""
    value = record.get(resource_type.id_field)
    return str(value) if value is not None else None


def record_updated_at(record: dict) -> datetime | None:
    return parse_iso_datetime(record.get("updated_at"))
