"""Pydantic schemas for WHOOP webhook payloads and API responses."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pydantic import Field, field_validator

from src.models.base import WhoopBase
from src.whoop.base import CollectionPage, EventType, OAuthTokens, WebhookEvent, utc_now


class WebhookPayload(WhoopBase):
    """Body of a WHOOP webhook: ``{user_id, id, type, trace_id}``."""

    user_id: int
    id: str
    type: EventType
    trace_id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # v1 ids are integers, v2 ids are UUID strings
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def to_event(self, received_at: datetime | None = None) -> WebhookEvent:
        return WebhookEvent(
            user_id=self.user_id,
            object_id=self.id,
            event_type=self.type,
            trace_id=self.trace_id,
            received_at=received_at or utc_now(),
        )


class TokenResponse(WhoopBase):
    """Response of ``POST /oauth/oauth2/token``."""

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int = 3600
    scope: str = ""
    token_type: str = "bearer"

    def to_tokens(self, issued_at: datetime | None = None) -> OAuthTokens:
        issued = issued_at or utc_now()
        return OAuthTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=issued + timedelta(seconds=self.expires_in),
            token_type=self.token_type,
            scopes=frozenset(self.scope.split()),
        )


class CollectionResponse(WhoopBase):
    """One page of a WHOOP collection endpoint."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    next_token: str | None = None

    def to_page(self) -> CollectionPage:
        return CollectionPage(records=self.records, next_token=self.next_token or None)


class BasicProfile(WhoopBase):
    """Response of ``GET /v1/user/profile/basic``."""

    user_id: int
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
