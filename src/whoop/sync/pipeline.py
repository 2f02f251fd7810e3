"""WHOOP webhook ingestion pipeline.

Per inbound request::

    RECEIVED → VERIFIED → (DUPLICATE | DISPATCHED) → ACKED
        └──→ REJECTED (bad signature, HTTP 403)

``receive()`` is the only part on the HTTP path.  It verifies the raw bytes,
parses the payload, consults the trace-id dedup window and enqueues a fetch
task, then returns.  WHOOP retries any delivery it does not see acknowledged
promptly, so nothing slow ever runs before the acknowledgment.

A pool of worker tasks drains the queue.  For ``*.updated`` events a worker
fetches the record's current state through the Token Refresh Coordinator
(refresh on 401, wait on 429, backoff on network errors) and hands it to the
sink.  ``*.deleted`` events go straight to the sink.  A 404 means the record
was deleted before the fetch: nothing to apply.  Exhausted retries are logged
and dropped; the reconciliation sweep picks those records up later.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import ValidationError

from src.models.whoop import WebhookPayload
from src.whoop.base import WebhookEvent, utc_now
from src.whoop.client import WhoopClient
from src.whoop.coordinator import TokenRefreshCoordinator
from src.whoop.errors import (
    ReauthorizationRequired,
    ResourceGone,
    SignatureInvalid,
    TokenNotFound,
    WhoopError,
)
from src.whoop.signature import SignatureVerifier
from src.whoop.sync.dedup import TraceDedupWindow
from src.whoop.sync.sink import RecordSink

logger = logging.getLogger("whoopsync.sync.pipeline")
security_logger = logging.getLogger("whoopsync.security")


class PipelineOutcome(str, Enum):
    """Terminal state of one inbound webhook request."""

    REJECTED = "rejected"      # signature failed, respond 403
    DUPLICATE = "duplicate"    # trace already seen, not reprocessed
    DISPATCHED = "dispatched"  # fetch task queued
    ACKED = "acked"            # acknowledged without dispatch (unparseable, queue full)

    @property
    def http_status(self) -> int:
        return 403 if self is PipelineOutcome.REJECTED else 200


@dataclass
class DispatchTask:
    """Queued follow-up fetch for one webhook event."""

    event: WebhookEvent
    enqueued_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str, int]:
        return self.event.dispatch_key


@dataclass
class PipelineStats:
    received: int = 0
    rejected: int = 0
    duplicates: int = 0
    dispatched: int = 0
    coalesced: int = 0
    applied: int = 0
    gone: int = 0
    dropped: int = 0


class WebhookPipeline:
    """Verify, deduplicate, and dispatch WHOOP webhooks.

    Usage::

        pipeline = WebhookPipeline(verifier, dedup, coordinator, client, sink)
        await pipeline.start()
        outcome = await pipeline.receive(body, signature, timestamp)
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        dedup: TraceDedupWindow,
        coordinator: TokenRefreshCoordinator,
        client: WhoopClient,
        sink: RecordSink,
        workers: int = 4,
        queue_max_size: int = 10000,
    ) -> None:
        self._verifier = verifier
        self._dedup = dedup
        self._coordinator = coordinator
        self._client = client
        self._sink = sink
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[DispatchTask] = asyncio.Queue(maxsize=queue_max_size)
        self._pending: set[tuple[str, str, int]] = set()
        self._workers: list[asyncio.Task] = []
        self.stats = PipelineStats()

    # ------------------------------------------------------------------
    # HTTP-facing path
    # ------------------------------------------------------------------

    async def receive(
        self,
        raw_body: bytes,
        signature: str | None,
        timestamp: str | None,
    ) -> PipelineOutcome:
        """Handle one inbound webhook request.  Never raises."""
        self.stats.received += 1
        try:
            self._verify(raw_body, signature, timestamp)
        except SignatureInvalid as exc:
            self.stats.rejected += 1
            security_logger.warning("Rejected WHOOP webhook: %s", exc)
            return PipelineOutcome.REJECTED

        try:
            event = self._parse(raw_body)
        except ValueError as exc:
            # Redelivery cannot fix a payload we cannot read
            logger.error("Unprocessable WHOOP webhook acknowledged: %s", exc)
            return PipelineOutcome.ACKED

        try:
            return await self._dispatch(event)
        except Exception:
            logger.exception(
                "Internal error handling WHOOP webhook trace %s; acknowledged anyway", event.trace_id
            )
            return PipelineOutcome.ACKED

    def _verify(self, raw_body: bytes, signature: str | None, timestamp: str | None) -> None:
        if not signature or not timestamp:
            raise SignatureInvalid("missing signature headers")
        if not self._verifier.verify(timestamp, raw_body, signature):
            raise SignatureInvalid(f"signature mismatch or stale timestamp ({timestamp})")

    @staticmethod
    def _parse(raw_body: bytes) -> WebhookEvent:
        try:
            data = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"body is not JSON: {exc}") from exc
        try:
            return WebhookPayload.model_validate(data).to_event()
        except ValidationError as exc:
            raise ValueError(f"payload does not match the webhook schema: {exc}") from exc

    async def _dispatch(self, event: WebhookEvent) -> PipelineOutcome:
        if not await self._dedup.check_and_mark(event.trace_id):
            self.stats.duplicates += 1
            logger.info("Duplicate WHOOP webhook trace %s acknowledged", event.trace_id)
            return PipelineOutcome.DUPLICATE

        task = DispatchTask(event=event)
        if task.key in self._pending:
            # Same record already waiting; that fetch will see the latest state
            self.stats.coalesced += 1
            return PipelineOutcome.DISPATCHED

        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            await self._dedup.forget(event.trace_id)
            logger.error(
                "Dispatch queue full; dropping WHOOP %s %s for user %s (reconciliation will recover)",
                event.event_type.value, event.object_id, event.user_id,
            )
            return PipelineOutcome.ACKED

        self._pending.add(task.key)
        self.stats.dispatched += 1
        logger.info(
            "Dispatched WHOOP %s %s for user %s (trace %s)",
            event.event_type.value, event.object_id, event.user_id, event.trace_id,
        )
        return PipelineOutcome.DISPATCHED

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"whoop-webhook-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Started %d WHOOP webhook workers", self._worker_count)

    async def stop(self) -> None:
        """Cancel the workers.  Queued tasks are abandoned to reconciliation."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        if self._workers:
            logger.info("Stopped WHOOP webhook workers (%d tasks abandoned)", self._queue.qsize())
        self._workers = []

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            self._pending.discard(task.key)
            try:
                await self.process(task.event)
            except Exception:
                self.stats.dropped += 1
                logger.exception(
                    "Worker %d failed on WHOOP %s %s", index, task.event.event_type.value, task.event.object_id
                )
            finally:
                self._queue.task_done()

    async def process(self, event: WebhookEvent) -> None:
        """Fetch and apply the state behind one event.

        Expected failures are logged and dropped, never raised.
        """
        resource_type = event.resource_type

        if event.event_type.is_deletion:
            await self._sink.apply_delete(
                resource_type, event.user_id, event.object_id, deleted_at=event.received_at
            )
            self.stats.applied += 1
            logger.info("Applied WHOOP %s deletion %s", resource_type.value, event.object_id)
            return

        try:
            record = await self._coordinator.authorized_call(
                event.user_id,
                lambda token: self._client.get_resource(resource_type, event.object_id, token),
                label=f"Fetch {resource_type.value} {event.object_id}",
            )
        except ResourceGone:
            self.stats.gone += 1
            logger.info(
                "WHOOP %s %s no longer exists; nothing to apply", resource_type.value, event.object_id
            )
            return
        except (ReauthorizationRequired, TokenNotFound) as exc:
            self.stats.dropped += 1
            logger.warning("Dropping WHOOP %s for user %s: %s", event.event_type.value, event.user_id, exc)
            return
        except WhoopError as exc:
            self.stats.dropped += 1
            logger.warning(
                "Giving up on WHOOP %s %s for user %s after retries: %s",
                resource_type.value, event.object_id, event.user_id, exc,
            )
            return

        if await self._sink.apply_update(resource_type, event.user_id, record):
            self.stats.applied += 1
