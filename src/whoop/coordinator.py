"""Token Refresh Coordinator: serves valid WHOOP access tokens.

WHOOP invalidates a refresh token the moment it is used.  If two refreshes
for the same member ever raced, the loser would present a dead refresh token
and lose access permanently.  The coordinator therefore keeps at most one
refresh in flight per ``user_id``; every other caller awaits that refresh's
result instead of starting its own.

Flow for ``get_valid_access_token``:
1. ACTIVE and valid beyond the safety margin → return the cached token (no I/O)
2. Refresh already in flight for the user → await it
3. Otherwise start the refresh: mark REFRESHING, POST to the token endpoint
   with ``grant_type=refresh_token`` and ``scope=offline``
4. Success → store the new pair as ACTIVE, release waiters with the token
5. Provider rejection → mark INVALID, release waiters with
   ``ReauthorizationRequired`` (never retried)
6. A revoke that lands while the refresh is in flight wins: the record stays
   REVOKED whatever the refresh outcome, and any tokens it obtained are revoked
   at WHOOP

Refreshes for different users run fully in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

from src.whoop.backoff import BackoffPolicy, call_with_backoff
from src.whoop.base import OAuthTokens, TokenRecord, TokenState, utc_now
from src.whoop.client import WhoopClient
from src.whoop.errors import (
    AuthExpired,
    RateLimited,
    ReauthorizationRequired,
    TransientNetworkFailure,
    WhoopError,
)
from src.whoop.token_store import TokenStore

logger = logging.getLogger("whoopsync.tokens")

T = TypeVar("T")

DEFAULT_REFRESH_MARGIN = timedelta(seconds=60)


class TokenRefreshCoordinator:
    """Single-flight, proactive + reactive token refresh.

    Usage::

        coordinator = TokenRefreshCoordinator(store, client)
        token = await coordinator.get_valid_access_token(user_id)

        # or let it handle 401s and retries around a data call:
        record = await coordinator.authorized_call(
            user_id, lambda token: client.get_resource(ResourceType.SLEEP, sleep_id, token)
        )
    """

    def __init__(
        self,
        store: TokenStore,
        client: WhoopClient,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store:          Token store this coordinator is the only writer of.
            client:         WHOOP client used for the token endpoint.
            refresh_margin: Refresh when a token expires within this margin.
            backoff:        Retry policy for transient token-endpoint failures
                            and for ``authorized_call``.
            sleep:          Awaitable sleep used between retries.
        """
        self._store = store
        self._client = client
        self._margin = refresh_margin
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._inflight: dict[int, asyncio.Future[str]] = {}

    @property
    def store(self) -> TokenStore:
        return self._store

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    async def get_valid_access_token(
        self, user_id: int, min_validity: timedelta | None = None
    ) -> str:
        """Return an access token valid for at least ``min_validity``.

        Args:
            user_id:      WHOOP member id.
            min_validity: Required remaining lifetime; defaults to the safety
                          margin.  The proactive sweep passes its window here.

        Raises:
            TokenNotFound:           The user never connected.
            ReauthorizationRequired: Tokens are REVOKED/INVALID or the refresh
                                     was rejected.
            TransientNetworkFailure: The token endpoint stayed unreachable.
        """
        margin = self._margin if min_validity is None else max(min_validity, self._margin)
        record = await self._store.get(user_id)
        if record.state.is_terminal:
            raise ReauthorizationRequired(user_id, f"tokens are {record.state.value}")
        if record.is_valid_for(margin):
            return record.access_token
        return await self._join_refresh(user_id, margin=margin)

    async def refresh_rejected_token(self, user_id: int, rejected_token: str) -> str:
        """Reactive refresh after WHOOP answered 401 for ``rejected_token``.

        If another caller already replaced that token, the current one is
        returned without a second refresh.
        """
        logger.info("Access token rejected for user %s; refreshing", user_id)
        return await self._join_refresh(user_id, rejected_token=rejected_token)

    async def authorized_call(
        self,
        user_id: int,
        request: Callable[[str], Awaitable[T]],
        label: str = "WHOOP call",
    ) -> T:
        """Run ``request(access_token)`` with refresh-on-401 and backoff.

        Raises whatever ``request`` raises once the backoff policy is spent,
        plus ``ReauthorizationRequired`` / ``TokenNotFound`` immediately.
        """

        async def attempt() -> T:
            token = await self.get_valid_access_token(user_id)
            try:
                return await request(token)
            except AuthExpired:
                await self.refresh_rejected_token(user_id, token)
                raise

        return await call_with_backoff(
            attempt, self._backoff, sleep=self._sleep, label=f"{label} for user {user_id}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def register(self, user_id: int, tokens: OAuthTokens) -> TokenRecord:
        """Store the tokens from a completed OAuth exchange as ACTIVE.

        Replaces any previous record, including REVOKED/INVALID ones; this is
        how a member leaves a terminal state.
        """
        if not tokens.refresh_token:
            raise ReauthorizationRequired(
                user_id, "token response has no refresh_token; was the offline scope granted?"
            )
        record = TokenRecord(
            user_id=user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scopes=tokens.scopes,
            state=TokenState.ACTIVE,
        )
        await self._store.put(record)
        logger.info("Registered WHOOP tokens for user %s (scopes=%s)", user_id, sorted(tokens.scopes))
        return record

    async def revoke(self, user_id: int) -> TokenRecord:
        """Mark the user REVOKED and tell WHOOP to drop the app's access.

        The provider call is best-effort; the local state is authoritative.
        When a refresh is in flight, that refresh revokes the tokens it ends
        up holding once it sees the REVOKED state.
        """
        record = await self._store.get(user_id)
        revoked = await self._store.mark_revoked(user_id)
        if self.in_flight(user_id):
            logger.info("Revoked user %s mid-refresh; provider revocation deferred to the refresh", user_id)
        elif not record.state.is_terminal and record.is_valid_for(timedelta(0)):
            await self._revoke_at_provider(user_id, record.access_token)
        return revoked

    async def refresh_expiring(
        self, window: timedelta, max_concurrent: int = 5
    ) -> dict[int, str]:
        """Refresh every ACTIVE token expiring within ``window``.

        Returns:
            Mapping of user_id → outcome (``refreshed``, ``reauthorization_required``,
            ``failed``) for each user that needed a refresh.
        """
        deadline = utc_now() + window
        records = await self._store.list_records(states=[TokenState.ACTIVE])
        due = [r.user_id for r in records if r.expires_at <= deadline]
        if not due:
            return {}

        logger.info("Proactively refreshing %d WHOOP token(s)", len(due))
        semaphore = asyncio.Semaphore(max(1, max_concurrent))
        outcomes: dict[int, str] = {}

        async def _one(user_id: int) -> None:
            async with semaphore:
                try:
                    await self.get_valid_access_token(user_id, min_validity=window)
                    outcomes[user_id] = "refreshed"
                except ReauthorizationRequired:
                    outcomes[user_id] = "reauthorization_required"
                except WhoopError as exc:
                    logger.warning("Proactive refresh failed for user %s: %s", user_id, exc)
                    outcomes[user_id] = "failed"

        await asyncio.gather(*(_one(uid) for uid in due))
        return outcomes

    def in_flight(self, user_id: int) -> bool:
        return user_id in self._inflight

    # ------------------------------------------------------------------
    # Single-flight refresh
    # ------------------------------------------------------------------

    async def _join_refresh(
        self,
        user_id: int,
        margin: timedelta | None = None,
        rejected_token: str | None = None,
    ) -> str:
        # No await between lookup and insert: the check-and-claim is atomic
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.ensure_future(
                self._refresh(user_id, margin or self._margin, rejected_token)
            )
            self._inflight[user_id] = task
            task.add_done_callback(lambda t: self._release(user_id, t))
        # A cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def _release(self, user_id: int, task: asyncio.Future[str]) -> None:
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]
        if not task.cancelled():
            task.exception()  # mark retrieved when every waiter was cancelled

    async def _refresh(
        self, user_id: int, margin: timedelta, rejected_token: str | None
    ) -> str:
        record = await self._store.get(user_id)
        if record.state.is_terminal:
            raise ReauthorizationRequired(user_id, f"tokens are {record.state.value}")

        # Another refresh may have completed between the caller's read and now
        if record.state is TokenState.ACTIVE:
            if rejected_token is not None and record.access_token != rejected_token:
                return record.access_token
            if rejected_token is None and record.is_valid_for(margin):
                return record.access_token

        await self._store.put(record.with_state(TokenState.REFRESHING))
        logger.info("Refreshing WHOOP token for user %s", user_id)

        try:
            tokens = await call_with_backoff(
                lambda: self._client.refresh_token(record.refresh_token),
                self._backoff,
                retry_on=(TransientNetworkFailure, RateLimited),
                sleep=self._sleep,
                label=f"Token refresh for user {user_id}",
            )
        except ReauthorizationRequired as exc:
            if await self._restore_after_failure(record, TokenState.INVALID) is None:
                logger.error(
                    "WHOOP refresh token rejected for user %s; re-authorization required: %s",
                    user_id, exc.reason,
                )
            raise ReauthorizationRequired(user_id, exc.reason) from exc
        except (TransientNetworkFailure, RateLimited) as exc:
            # Refresh token presumed unused; leave the user refreshable
            terminal = await self._restore_after_failure(record, TokenState.ACTIVE)
            if terminal is not None:
                if terminal.state is TokenState.REVOKED and record.is_valid_for(timedelta(0)):
                    await self._revoke_at_provider(user_id, record.access_token)
                raise ReauthorizationRequired(
                    user_id, f"tokens were {terminal.state.value} during refresh"
                ) from exc
            raise TransientNetworkFailure(
                f"Token refresh for user {user_id} did not complete: {exc}"
            ) from exc
        except BaseException:
            await self._restore_after_failure(record, TokenState.ACTIVE)
            raise

        # A revoke that landed mid-refresh wins over the new tokens
        current = await self._store.get(user_id)
        if current.state.is_terminal:
            if current.state is TokenState.REVOKED:
                await self._revoke_at_provider(user_id, tokens.access_token)
            raise ReauthorizationRequired(user_id, f"tokens were {current.state.value} during refresh")

        refreshed = record.with_tokens(tokens)
        await self._store.put(refreshed)
        logger.info(
            "Refreshed WHOOP token for user %s (expires %s)", user_id, refreshed.expires_at.isoformat()
        )
        return refreshed.access_token

    async def _restore_after_failure(
        self, record: TokenRecord, state: TokenState
    ) -> TokenRecord | None:
        """Write ``record`` back in ``state`` after a failed refresh.

        Returns the stored record instead, untouched, when it went terminal
        while the refresh was in flight.
        """
        current = await self._store.get(record.user_id)
        if current.state.is_terminal:
            return current
        await self._store.put(record.with_state(state))
        return None

    async def _revoke_at_provider(self, user_id: int, access_token: str) -> None:
        try:
            await self._client.revoke_access(access_token)
        except WhoopError as exc:
            logger.warning("WHOOP access revocation failed for user %s: %s", user_id, exc)


@dataclass
class ProactiveRefresher:
    """Periodic sweep that refreshes tokens before they expire.

    Smooths token-endpoint load over the hour instead of bursting refreshes at
    expiry time.
    """

    coordinator: TokenRefreshCoordinator
    interval_seconds: float = 3600
    window: timedelta = timedelta(seconds=4200)
    max_concurrent: int = 5
    _task: asyncio.Task | None = field(default=None, init=False, repr=False)

    async def run_once(self) -> dict[int, str]:
        return await self.coordinator.refresh_expiring(self.window, self.max_concurrent)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="whoop-proactive-refresh")
            logger.info(
                "Proactive token refresh every %.0fs (window %s)", self.interval_seconds, self.window
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Proactive token refresh sweep failed")
            await asyncio.sleep(self.interval_seconds)
