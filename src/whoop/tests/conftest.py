"""Shared fixtures and a fake WHOOP API for the sync tests."""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from src.whoop.backoff import BackoffPolicy
from src.whoop.base import ResourceType, TokenRecord, TokenState, utc_now
from src.whoop.client import WhoopClient
from src.whoop.config_loader import SyncConfig, load_sync_config
from src.whoop.coordinator import TokenRefreshCoordinator
from src.whoop.token_store import InMemoryTokenStore

# Canonical test member
TEST_USER_ID = 10129
TEST_SECRET = "test_client_secret"

API_BASE = "https://api.test.whoop.com/developer"
TOKEN_URL = "https://api.test.whoop.com/oauth/oauth2/token"
AUTH_URL = "https://api.test.whoop.com/oauth/oauth2/auth"

_RECORD_ROUTES = [
    (re.compile(r"^/v1/activity/sleep/(?P<id>[^/]+)$"), ResourceType.SLEEP),
    (re.compile(r"^/v1/activity/workout/(?P<id>[^/]+)$"), ResourceType.WORKOUT),
    (re.compile(r"^/v1/cycle/(?P<id>[^/]+)/recovery$"), ResourceType.RECOVERY),
]
_COLLECTION_ROUTES = {rt.collection_path: rt for rt in ResourceType}


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fake WHOOP API
# ---------------------------------------------------------------------------


class FakeWhoopAPI:
    """In-process WHOOP stand-in served through ``httpx.MockTransport``.

    Mirrors the provider behaviour the sync relies on: refresh tokens are
    single use, unknown bearer tokens get 401, missing records 404, and
    collections paginate with ``nextToken``.
    """

    def __init__(self) -> None:
        self.live_refresh_tokens: dict[str, int] = {}
        self.live_access_tokens: dict[str, int] = {}
        self.auth_codes: dict[str, int] = {}
        self.records: dict[tuple[ResourceType, str], dict] = {}
        self.collections: dict[ResourceType, list[dict]] = {rt: [] for rt in ResourceType}
        self.token_requests: list[dict[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.revoked: list[str] = []
        # Knobs
        self.token_status: int | None = None
        self.refresh_delay: float = 0.0
        self.rate_limits: dict[str, list[str]] = {}
        self.failing_pages: dict[ResourceType, set[int]] = {}
        self._counter = 0

    # -- setup helpers ----------------------------------------------------

    def issue(self, user_id: int, expires_in: int = 3600) -> dict:
        self._counter += 1
        access, refresh = f"A{self._counter}", f"R{self._counter}"
        self.live_access_tokens[access] = user_id
        self.live_refresh_tokens[refresh] = user_id
        return {
            "access_token": access,
            "refresh_token": refresh,
            "expires_in": expires_in,
            "scope": "offline read:recovery read:sleep read:workout",
            "token_type": "bearer",
        }

    def token_record(
        self, user_id: int = TEST_USER_ID, expires_in: timedelta = timedelta(hours=1)
    ) -> TokenRecord:
        """Issue tokens and return them as a stored record expiring in ``expires_in``."""
        issued = self.issue(user_id)
        return TokenRecord(
            user_id=user_id,
            access_token=issued["access_token"],
            refresh_token=issued["refresh_token"],
            expires_at=utc_now() + expires_in,
            scopes=frozenset(issued["scope"].split()),
            state=TokenState.ACTIVE,
        )

    def refresh_requests(self) -> list[dict[str, str]]:
        return [r for r in self.token_requests if r.get("grant_type") == "refresh_token"]

    def data_requests(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- request handling ---------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth/oauth2/token"):
            return await self._token(request)
        self.requests.append(request)
        path = request.url.path.removeprefix("/developer")

        retry_after = self.rate_limits.get(path)
        if retry_after:
            return httpx.Response(429, headers={"Retry-After": retry_after.pop(0)})

        bearer = request.headers.get("Authorization", "").removeprefix("Bearer ")
        user_id = self.live_access_tokens.get(bearer)
        if user_id is None:
            return httpx.Response(401, json={"error": "invalid_token"})

        if path == "/v1/user/profile/basic":
            return httpx.Response(
                200,
                json={"user_id": user_id, "email": "member@example.com", "first_name": "Sam", "last_name": "Lee"},
            )
        if path == "/v1/user/access" and request.method == "DELETE":
            self.revoked.append(bearer)
            return httpx.Response(204)
        if path in _COLLECTION_ROUTES:
            return self._collection(_COLLECTION_ROUTES[path], user_id, request)
        for pattern, resource_type in _RECORD_ROUTES:
            match = pattern.match(path)
            if match:
                record = self.records.get((resource_type, match["id"]))
                if record is None:
                    return httpx.Response(404, json={"error": "not_found"})
                return httpx.Response(200, json=record)
        return httpx.Response(404)

    async def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)
        if form.get("grant_type") == "refresh_token" and self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.token_status is not None:
            return httpx.Response(self.token_status, json={"error": "server_error"})

        if form.get("grant_type") == "authorization_code":
            user_id = self.auth_codes.pop(form.get("code", ""), None)
            if user_id is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.issue(user_id))

        # Single use: the token is dead the moment WHOOP sees it
        user_id = self.live_refresh_tokens.pop(form.get("refresh_token", ""), None)
        if user_id is None:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "refresh token invalid"}
            )
        return httpx.Response(200, json=self.issue(user_id))

    def _collection(
        self, resource_type: ResourceType, user_id: int, request: httpx.Request
    ) -> httpx.Response:
        limit = int(request.url.params.get("limit", "25"))
        offset = int(request.url.params.get("nextToken") or 0)
        page_number = offset // limit + 1
        if page_number in self.failing_pages.get(resource_type, set()):
            return httpx.Response(500, json={"error": "internal"})
        rows = [r for r in self.collections[resource_type] if r.get("user_id") == user_id]
        chunk = rows[offset:offset + limit]
        next_offset = offset + limit
        return httpx.Response(
            200,
            json={
                "records": chunk,
                "next_token": str(next_offset) if next_offset < len(rows) else None,
            },
        )


def whoop_record(
    resource_type: ResourceType,
    object_id: str | int,
    user_id: int = TEST_USER_ID,
    updated_at: datetime | None = None,
    **extra,
) -> dict:
    """Build an API record shaped like WHOOP's responses."""
    updated = updated_at or datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
    record = {
        resource_type.id_field: object_id,
        "user_id": user_id,
        "created_at": "2026-03-01T06:00:00.000Z",
        "updated_at": updated.isoformat().replace("+00:00", "Z"),
        "score_state": "SCORED",
    }
    record.update(extra)
    return record


def webhook_body(
    event_type: str = "sleep.updated",
    object_id: str | int = "ecfc6a15-4661-442f-a9a4-f160dd7afae8",
    trace_id: str = "d3c2b1a0-trace",
    user_id: int = TEST_USER_ID,
) -> bytes:
    return json.dumps(
        {"user_id": user_id, "id": object_id, "type": event_type, "trace_id": trace_id}
    ).encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_whoop() -> FakeWhoopAPI:
    return FakeWhoopAPI()


@pytest_asyncio.fixture
async def http_client(fake_whoop: FakeWhoopAPI):
    async with httpx.AsyncClient(transport=fake_whoop.transport()) as client:
        yield client


@pytest.fixture
def whoop_client(http_client: httpx.AsyncClient, clock: FakeClock) -> WhoopClient:
    return WhoopClient(
        client_id="test_client_id",
        client_secret=TEST_SECRET,
        http_client=http_client,
        api_base=API_BASE,
        token_url=TOKEN_URL,
        auth_url=AUTH_URL,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=4.0, jitter=0.0)


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def coordinator(
    token_store: InMemoryTokenStore,
    whoop_client: WhoopClient,
    fast_backoff: BackoffPolicy,
    clock: FakeClock,
) -> TokenRefreshCoordinator:
    return TokenRefreshCoordinator(
        token_store, whoop_client, backoff=fast_backoff, sleep=clock.sleep
    )
