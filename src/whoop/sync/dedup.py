"""Deduplication of WHOOP webhook deliveries.

WHOOP delivers webhooks at least once and retries a delivery up to five times
over about an hour when it does not see a prompt 2xx.  Each logical event
carries a ``trace_id``; a redelivery reuses it.  The dedup window remembers
recent trace ids so a redelivery is acknowledged without being reprocessed.

The window is bounded both in time (TTL, default 24 h) and in size (oldest
entries evicted first).  An evicted trace that is redelivered is processed
again, which the idempotent sink tolerates.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import timedelta
from typing import Callable

from src.services import database
from src.whoop.base import utc_now

logger = logging.getLogger("whoopsync.sync.dedup")


class TraceDedupWindow(ABC):
    """Remembers recently seen webhook ``trace_id`` values."""

    @abstractmethod
    async def check_and_mark(self, trace_id: str) -> bool:
        """Atomically record ``trace_id``.

        Returns:
            True if the trace is new (process it), False if it is a duplicate.
        """

    @abstractmethod
    async def forget(self, trace_id: str) -> None:
        """Drop ``trace_id`` so a redelivery is processed again."""


class InMemoryDedupWindow(TraceDedupWindow):
    """In-process TTL + size bounded trace window.

    Entries are kept in insertion order; with a fixed TTL that is also expiry
    order, so expired entries are always at the front.

    Usage::

        window = InMemoryDedupWindow(ttl_seconds=86400, max_entries=100_000)
        if await window.check_and_mark(event.trace_id):
            ...  # first delivery
    """

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._expires: OrderedDict[str, float] = OrderedDict()

    def _evict(self, now: float) -> None:
        while self._expires:
            trace_id, expires_at = next(iter(self._expires.items()))
            if expires_at > now:
                break
            del self._expires[trace_id]
        while len(self._expires) > self._max_entries:
            evicted, _ = self._expires.popitem(last=False)
            logger.debug("Dedup window full; evicted trace %s", evicted)

    def is_seen(self, trace_id: str) -> bool:
        now = self._clock()
        self._evict(now)
        return trace_id in self._expires

    async def check_and_mark(self, trace_id: str) -> bool:
        now = self._clock()
        self._evict(now)
        if trace_id in self._expires:
            return False
        self._expires[trace_id] = now + self._ttl
        self._evict(now)
        return True

    async def forget(self, trace_id: str) -> None:
        self._expires.pop(trace_id, None)

    def clear(self) -> None:
        """Reset the window."""
        self._expires.clear()

    def __len__(self) -> int:
        return len(self._expires)


class PostgresDedupWindow(TraceDedupWindow):
    """Trace window shared across processes via ``whoop_webhook_traces``.

    An expired row is overwritten in place when its trace comes back.  Rows
    for traces that never return are deleted by ``prune``, which runs once
    every ``prune_every`` marks so the table stays bounded by the TTL.
    """

    _MARK = (
        "INSERT INTO whoop_webhook_traces (trace_id, expires_at) VALUES ($1, $2) "
        "ON CONFLICT (trace_id) DO UPDATE SET expires_at = EXCLUDED.expires_at "
        "WHERE whoop_webhook_traces.expires_at <= NOW() "
        "RETURNING trace_id"
    )
    _PRUNE = "DELETE FROM whoop_webhook_traces WHERE expires_at <= NOW()"

    def __init__(self, ttl_seconds: float = 86400, prune_every: int = 1000) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._prune_every = max(1, prune_every)
        self._marks = 0

    async def check_and_mark(self, trace_id: str) -> bool:
        inserted = await database.fetchval(self._MARK, trace_id, utc_now() + self._ttl)
        self._marks += 1
        if self._marks % self._prune_every == 0:
            await self.prune()
        return inserted is not None

    async def prune(self) -> int:
        """Delete expired traces; returns the number of rows removed."""
        status = await database.execute(self._PRUNE)
        removed = int(status.rsplit(" ", 1)[-1]) if status else 0
        if removed:
            logger.info("Pruned %d expired webhook trace(s)", removed)
        return removed

    async def forget(self, trace_id: str) -> None:
        await database.execute("DELETE FROM whoop_webhook_traces WHERE trace_id = $1", trace_id)
