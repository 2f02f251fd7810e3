"""WHOOP developer API client.

Uses OAuth2 for authentication.

API base: https://api.prod.whoop.com/developer

Endpoints used:
    POST /oauth/oauth2/token          — Code exchange and refresh
    GET  /v1/activity/workout[/{id}]  — Workouts
    GET  /v1/activity/sleep[/{id}]    — Sleeps
    GET  /v1/recovery                 — Recoveries (collection)
    GET  /v1/cycle/{id}/recovery      — Recovery for one cycle
    GET  /v1/user/profile/basic       — Member id lookup after OAuth
    DELETE /v1/user/access            — Revoke the app's access

Every HTTP outcome is mapped onto the error taxonomy in ``src.whoop.errors``
so callers never inspect status codes.  A 429 closes a per-endpoint gate: the
next call to that endpoint waits out ``Retry-After`` before going on the wire.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from src.models.whoop import BasicProfile, CollectionResponse, TokenResponse
from src.whoop.base import CollectionPage, OAuthTokens, ResourceType, utc_now
from src.whoop.errors import (
    AuthExpired,
    RateLimited,
    ReauthorizationRequired,
    ResourceGone,
    TransientNetworkFailure,
    WhoopAPIError,
)

logger = logging.getLogger("whoopsync.whoop.client")

WHOOP_API_BASE = "https://api.prod.whoop.com/developer"
WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"
WHOOP_AUTH_URL = "https://api.prod.whoop.com/oauth/oauth2/auth"

# Used when a 429 carries no usable Retry-After
DEFAULT_RETRY_AFTER_SECONDS = 60.0


def parse_retry_after(value: str | None, now: datetime | None = None) -> float:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date) to seconds."""
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, (when - (now or utc_now())).total_seconds())


class WhoopClient:
    """Async client for the WHOOP OAuth and data endpoints.

    Holds no per-user state beyond the rate-limit gates; access tokens are
    passed into every data call by the Token Refresh Coordinator.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        api_base: str = WHOOP_API_BASE,
        token_url: str = WHOOP_TOKEN_URL,
        auth_url: str = WHOOP_AUTH_URL,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the WHOOP client.

        Args:
            client_id:     OAuth2 client ID.
            client_secret: OAuth2 client secret.
            http_client:   Shared httpx client; a short-lived one is opened per
                           call when omitted.
            api_base:      Base URL of the developer API.
            token_url:     OAuth2 token endpoint.
            auth_url:      OAuth2 authorization endpoint.
            timeout:       Per-request timeout in seconds.
            clock:         Monotonic clock used by the rate-limit gates.
            sleep:         Awaitable sleep used by the rate-limit gates.
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._api_base = api_base.rstrip("/")
        self._token_url = token_url
        self._auth_url = auth_url
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        # endpoint key → monotonic time before which no call may be sent
        self._not_before: dict[str, float] = {}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, redirect_uri: str, scopes: list[str], state: str) -> str:
        """Build the URL the member is sent to for consent."""
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
        }
        return str(httpx.URL(self._auth_url, params=params))

    async def exchange_code(self, auth_code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an OAuth2 authorization code for tokens."""
        logger.info("WHOOP: exchanging authorization code")
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": auth_code,
                "redirect_uri": redirect_uri,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            }
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new token pair.

        WHOOP invalidates ``refresh_token`` as soon as this succeeds, so it must
        never be sent twice.

        Raises:
            ReauthorizationRequired: WHOOP rejected the refresh token (4xx).
            RateLimited:             429 from the token endpoint.
            TransientNetworkFailure: Network error or 5xx.
        """
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": "offline",
            }
        )

    async def _token_request(self, form: dict[str, str]) -> OAuthTokens:
        response = await self._send(
            "POST",
            self._token_url,
            gate_key="POST /oauth/oauth2/token",
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code in (400, 401, 403):
            raise ReauthorizationRequired(reason=_error_detail(response))
        self._raise_for_status(response, "POST /oauth/oauth2/token")
        try:
            return TokenResponse.model_validate(response.json()).to_tokens()
        except (ValueError, ValidationError) as exc:
            raise WhoopAPIError(response.status_code, f"Malformed token response: {exc}") from exc

    async def revoke_access(self, access_token: str) -> None:
        """Revoke this app's access for the member owning ``access_token``."""
        response = await self._send(
            "DELETE",
            f"{self._api_base}/v1/user/access",
            gate_key="DELETE /v1/user/access",
            headers=self._auth_headers(access_token),
        )
        self._raise_for_status(response, "DELETE /v1/user/access")

    async def get_profile(self, access_token: str) -> BasicProfile:
        data = await self._get_json("/v1/user/profile/basic", "GET /v1/user/profile/basic", {}, access_token)
        try:
            return BasicProfile.model_validate(data)
        except ValidationError as exc:
            raise WhoopAPIError(200, f"Malformed profile response: {exc}") from exc

    # ------------------------------------------------------------------
    # Data endpoints
    # ------------------------------------------------------------------

    async def get_resource(
        self, resource_type: ResourceType, object_id: str | int, access_token: str
    ) -> dict:
        """Fetch the current state of one record.

        Raises:
            ResourceGone: The record was deleted (404).
            AuthExpired:  The access token was rejected (401).
        """
        return await self._get_json(
            resource_type.record_path(object_id),
            f"GET {resource_type.collection_path}/{{id}}",
            {},
            access_token,
        )

    async def list_page(
        self,
        resource_type: ResourceType,
        access_token: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 25,
        next_token: str | None = None,
    ) -> CollectionPage:
        """Fetch one page of a collection.

        Follow-up pages must repeat the same ``start``/``end`` alongside the
        ``next_token`` returned by the previous page.
        """
        params: dict[str, Any] = {"limit": limit}
        if start is not None:
            params["start"] = _format_ts(start)
        if end is not None:
            params["end"] = _format_ts(end)
        if next_token:
            params["nextToken"] = next_token
        data = await self._get_json(
            resource_type.collection_path,
            f"GET {resource_type.collection_path}",
            params,
            access_token,
        )
        try:
            return CollectionResponse.model_validate(data).to_page()
        except ValidationError as exc:
            raise WhoopAPIError(200, f"Malformed collection response: {exc}") from exc

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _auth_headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _get_json(
        self, path: str, gate_key: str, params: dict, access_token: str
    ) -> dict:
        """Make an authenticated GET request and return the JSON body."""
        response = await self._send(
            "GET",
            f"{self._api_base}{path}",
            gate_key=gate_key,
            params=params,
            headers=self._auth_headers(access_token),
        )
        self._raise_for_status(response, gate_key)
        try:
            return response.json()
        except ValueError as exc:
            raise WhoopAPIError(response.status_code, f"Non-JSON body from {gate_key}") from exc

    async def _send(self, method: str, url: str, gate_key: str, **kwargs: Any) -> httpx.Response:
        """Send one request, honouring the endpoint's rate-limit gate."""
        wait = self._not_before.get(gate_key, 0.0) - self._clock()
        if wait > 0:
            logger.info("Waiting %.1fs for %s rate limit to clear", wait, gate_key)
            await self._sleep(wait)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, timeout=self._timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransientNetworkFailure(f"{gate_key}: {type(exc).__name__}: {exc}") from exc

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            self._not_before[gate_key] = self._clock() + retry_after
            logger.warning("WHOOP rate limited %s; Retry-After %.0fs", gate_key, retry_after)
            raise RateLimited(retry_after, endpoint=gate_key)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, gate_key: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 401:
            raise AuthExpired(f"{gate_key}: access token rejected")
        if status == 404:
            raise ResourceGone(f"{gate_key}: not found")
        if status >= 500:
            raise TransientNetworkFailure(f"{gate_key}: HTTP {status}")
        raise WhoopAPIError(status, _error_detail(response))


def _format_ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)
    return str(body)
