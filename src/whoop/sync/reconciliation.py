"""Reconciliation scheduler: periodic re-fetch from WHOOP as source of truth.

Webhooks can be lost (provider gave up, process was down, dispatch queue
full) or duplicated.  Independently of any webhook, each resource type is
swept on its own interval.  For every ACTIVE user a sweep:

1. Reads the ReconciliationCursor (or starts ``initial_lookback`` ago)
2. Pages through the collection with a fixed ``start``/``end`` window,
   resending both alongside each ``nextToken``
3. Feeds every record to the same idempotent sink as the webhook path
4. Advances the cursor to the latest ``updated_at`` observed (or, when the
   window was empty, to ``EMPTY_SWEEP_LAG`` before the sweep start), but only
   after the last page succeeded, so a failed sweep is re-covered by the next one
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from src.services import database
from src.whoop.base import (
    ReconciliationCursor,
    ResourceType,
    TokenState,
    record_updated_at,
    utc_now,
)
from src.whoop.client import WhoopClient
from src.whoop.coordinator import TokenRefreshCoordinator
from src.whoop.errors import ReauthorizationRequired, TokenNotFound, WhoopError
from src.whoop.sync.sink import RecordSink

logger = logging.getLogger("whoopsync.sync.reconciliation")

# Default sweep intervals per resource type (seconds)
SWEEP_INTERVALS: dict[ResourceType, int] = {
    ResourceType.RECOVERY: 21600,  # 6 hours
    ResourceType.SLEEP: 21600,
    ResourceType.WORKOUT: 21600,
}

# An empty sweep moves the cursor to this far behind the sweep start
EMPTY_SWEEP_LAG = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Cursor storage
# ---------------------------------------------------------------------------


class CursorStore(ABC):
    """Per-user, per-resource reconciliation watermarks."""

    @abstractmethod
    async def get(self, user_id: int, resource_type: ResourceType) -> ReconciliationCursor | None:
        """Return the cursor, or None before the first completed sweep."""

    @abstractmethod
    async def put(self, cursor: ReconciliationCursor) -> None:
        """Insert or replace a cursor."""

    @abstractmethod
    async def delete_user(self, user_id: int) -> None:
        """Drop every cursor of a disconnected user."""


class InMemoryCursorStore(CursorStore):
    def __init__(self) -> None:
        self._cursors: dict[tuple[int, ResourceType], ReconciliationCursor] = {}

    async def get(self, user_id: int, resource_type: ResourceType) -> ReconciliationCursor | None:
        return self._cursors.get((user_id, resource_type))

    async def put(self, cursor: ReconciliationCursor) -> None:
        self._cursors[(cursor.user_id, cursor.resource_type)] = cursor

    async def delete_user(self, user_id: int) -> None:
        for key in [k for k in self._cursors if k[0] == user_id]:
            del self._cursors[key]


class PostgresCursorStore(CursorStore):
    """Cursor store backed by ``whoop_reconciliation_cursors``."""

    _UPSERT = database.build_upsert_query(
        "whoop_reconciliation_cursors",
        ["user_id", "resource_type", "last_checked", "last_run_at"],
        conflict_columns=["user_id", "resource_type"],
    )

    async def get(self, user_id: int, resource_type: ResourceType) -> ReconciliationCursor | None:
        row = await database.fetchrow(
            "SELECT * FROM whoop_reconciliation_cursors WHERE user_id = $1 AND resource_type = $2",
            user_id,
            resource_type.value,
        )
        if row is None:
            return None
        return ReconciliationCursor(
            user_id=row["user_id"],
            resource_type=ResourceType(row["resource_type"]),
            last_checked=row["last_checked"],
            last_run_at=row["last_run_at"],
        )

    async def put(self, cursor: ReconciliationCursor) -> None:
        await database.execute(
            self._UPSERT,
            cursor.user_id,
            cursor.resource_type.value,
            cursor.last_checked,
            cursor.last_run_at,
        )

    async def delete_user(self, user_id: int) -> None:
        await database.execute(
            "DELETE FROM whoop_reconciliation_cursors WHERE user_id = $1", user_id
        )


# ---------------------------------------------------------------------------
# Sweep results
# ---------------------------------------------------------------------------


@dataclass
class SweepResult:
    """Result of reconciling one user + resource type.

    Attributes:
        user_id:         WHOOP member id.
        resource_type:   Resource swept.
        pages:           Pages fetched.
        records_seen:    Records returned by WHOOP.
        records_applied: Records that changed sink state.
        cursor_before:   Watermark the sweep started from.
        cursor_after:    Watermark after the sweep (unchanged on error).
        status:          'success', 'error', or 'skipped'.
        error:           Error message if status != 'success'.
        finished_at:     UTC completion time.
    """

    user_id: int
    resource_type: ResourceType
    pages: int = 0
    records_seen: int = 0
    records_applied: int = 0
    cursor_before: datetime | None = None
    cursor_after: datetime | None = None
    status: str = "success"
    error: str | None = None
    finished_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReconciliationScheduler:
    """Sweep WHOOP collections per user and resource type on fixed intervals.

    Usage::

        scheduler = ReconciliationScheduler(coordinator, cursors, client, sink)
        scheduler.start()          # one loop per resource type
        ...
        await scheduler.stop()

        # or a single on-demand pass:
        results = await scheduler.run_resource(ResourceType.SLEEP)
    """

    def __init__(
        self,
        coordinator: TokenRefreshCoordinator,
        cursors: CursorStore,
        client: WhoopClient,
        sink: RecordSink,
        intervals: dict[ResourceType, int] | None = None,
        initial_lookback: timedelta = timedelta(days=30),
        page_limit: int = 25,
        max_concurrent: int = 5,
    ) -> None:
        """Initialize the scheduler.

        Args:
            coordinator:      Supplies tokens and handles 401/429/backoff per page.
            cursors:          Watermark storage.
            client:           WHOOP client for collection pages.
            sink:             Idempotent apply-update sink.
            intervals:        Seconds between sweeps per resource type.
            initial_lookback: How far back the first sweep of a user reaches.
            page_limit:       Records per page (WHOOP allows at most 25).
            max_concurrent:   Users swept in parallel per resource type.
        """
        self._coordinator = coordinator
        self._cursors = cursors
        self._client = client
        self._sink = sink
        self._intervals = {**SWEEP_INTERVALS, **(intervals or {})}
        self._initial_lookback = initial_lookback
        self._page_limit = page_limit
        self._max_concurrent = max(1, max_concurrent)
        self._tasks: list[asyncio.Task] = []

    def get_interval(self, resource_type: ResourceType) -> int:
        return self._intervals.get(resource_type, 21600)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def start(self, resource_types: Iterable[ResourceType] | None = None) -> None:
        if self._tasks:
            return
        for resource_type in resource_types or list(ResourceType):
            self._tasks.append(
                asyncio.create_task(
                    self._loop(resource_type), name=f"whoop-reconcile-{resource_type.value}"
                )
            )
            logger.info(
                "Reconciling WHOOP %s every %ds", resource_type.value, self.get_interval(resource_type)
            )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _loop(self, resource_type: ResourceType) -> None:
        while True:
            try:
                await self.run_resource(resource_type)
            except Exception:
                logger.exception("Reconciliation pass for %s failed", resource_type.value)
            await asyncio.sleep(self.get_interval(resource_type))

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def run_resource(self, resource_type: ResourceType) -> list[SweepResult]:
        """Sweep one resource type for every ACTIVE user."""
        records = await self._coordinator.store.list_records(states=[TokenState.ACTIVE])
        if not records:
            logger.debug("Reconciliation %s: no active users", resource_type.value)
            return []

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _one(user_id: int) -> SweepResult:
            async with semaphore:
                try:
                    return await self.run_sweep(user_id, resource_type)
                except Exception as exc:
                    logger.exception(
                        "Reconciliation %s for user %s failed", resource_type.value, user_id
                    )
                    return SweepResult(
                        user_id=user_id, resource_type=resource_type, status="error", error=str(exc)
                    )

        results = list(await asyncio.gather(*(_one(r.user_id) for r in records)))
        logger.info(
            "Reconciliation %s: %d users, %d records applied, %d errors",
            resource_type.value,
            len(results),
            sum(r.records_applied for r in results),
            sum(1 for r in results if r.status == "error"),
        )
        return results

    async def run_sweep(self, user_id: int, resource_type: ResourceType) -> SweepResult:
        """Reconcile one user + resource type.  Never raises WhoopError."""
        started = utc_now()
        cursor = await self._cursors.get(user_id, resource_type)
        start = cursor.last_checked if cursor else started - self._initial_lookback
        result = SweepResult(
            user_id=user_id,
            resource_type=resource_type,
            cursor_before=cursor.last_checked if cursor else None,
            cursor_after=cursor.last_checked if cursor else None,
        )

        latest_seen: datetime | None = None
        next_token: str | None = None
        try:
            while True:
                page = await self._coordinator.authorized_call(
                    user_id,
                    lambda token, nt=next_token: self._client.list_page(
                        resource_type,
                        token,
                        start=start,
                        end=started,
                        limit=self._page_limit,
                        next_token=nt,
                    ),
                    label=f"Reconcile {resource_type.value} page {result.pages + 1}",
                )
                result.pages += 1
                for record in page.records:
                    result.records_seen += 1
                    if await self._sink.apply_update(resource_type, user_id, record):
                        result.records_applied += 1
                    updated_at = record_updated_at(record)
                    if updated_at and (latest_seen is None or updated_at > latest_seen):
                        latest_seen = updated_at
                if page.is_last:
                    break
                next_token = page.next_token
        except (ReauthorizationRequired, TokenNotFound) as exc:
            result.status = "skipped"
            result.error = str(exc)
            logger.info("Reconciliation %s skipped user %s: %s", resource_type.value, user_id, exc)
            return result
        except WhoopError as exc:
            result.status = "error"
            result.error = str(exc)
            logger.warning(
                "Reconciliation %s for user %s failed on page %d; cursor stays at %s: %s",
                resource_type.value, user_id, result.pages + 1, result.cursor_before, exc,
            )
            return result

        new_mark = start
        if latest_seen is not None and latest_seen > new_mark:
            new_mark = latest_seen
        elif result.records_seen == 0 and started - EMPTY_SWEEP_LAG > new_mark:
            new_mark = started - EMPTY_SWEEP_LAG
        await self._cursors.put(
            ReconciliationCursor(
                user_id=user_id,
                resource_type=resource_type,
                last_checked=new_mark,
                last_run_at=started,
            )
        )
        result.cursor_after = new_mark
        result.finished_at = utc_now()
        logger.info(
            "Reconciled WHOOP %s for user %s: %d pages, %d seen, %d applied",
            resource_type.value, user_id, result.pages, result.records_seen, result.records_applied,
        )
        return result
