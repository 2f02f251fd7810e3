"""Tests for the idempotent record sink."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src.whoop.base import ResourceType
from src.whoop.sync.sink import InMemoryRecordSink, PostgresRecordSink
from src.whoop.tests.conftest import TEST_USER_ID, whoop_record

T0 = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)


class TestInMemoryRecordSink:
    @pytest.mark.asyncio
    async def test_apply_same_record_twice_is_noop(self) -> None:
        sink = InMemoryRecordSink()
        record = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0)
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, record) is True
        snapshot = sink.snapshot()
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, dict(record)) is False
        assert sink.snapshot() == snapshot

    @pytest.mark.asyncio
    async def test_newer_version_replaces_older(self) -> None:
        sink = InMemoryRecordSink()
        await sink.apply_update(ResourceType.WORKOUT, TEST_USER_ID, whoop_record(ResourceType.WORKOUT, 7, updated_at=T0, strain=8.1))
        newer = whoop_record(ResourceType.WORKOUT, 7, updated_at=T0 + timedelta(minutes=5), strain=9.4)
        assert await sink.apply_update(ResourceType.WORKOUT, TEST_USER_ID, newer) is True
        assert sink.get(ResourceType.WORKOUT, "7")["strain"] == 9.4

    @pytest.mark.asyncio
    async def test_older_version_ignored(self) -> None:
        sink = InMemoryRecordSink()
        newer = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0 + timedelta(hours=1))
        await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, newer)
        older = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0)
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, older) is False
        assert sink.get(ResourceType.SLEEP, "s1") == newer

    @pytest.mark.asyncio
    async def test_recovery_keyed_by_cycle_id(self) -> None:
        sink = InMemoryRecordSink()
        await sink.apply_update(ResourceType.RECOVERY, TEST_USER_ID, whoop_record(ResourceType.RECOVERY, 93845))
        assert sink.get(ResourceType.RECOVERY, "93845") is not None

    @pytest.mark.asyncio
    async def test_record_without_id_dropped(self) -> None:
        sink = InMemoryRecordSink()
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, {"updated_at": "2026-03-01T07:00:00Z"}) is False
        assert len(sink) == 0

    @pytest.mark.asyncio
    async def test_delete_then_stale_update_stays_deleted(self) -> None:
        sink = InMemoryRecordSink()
        record = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0)
        await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, record)

        assert await sink.apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1") is True
        assert await sink.apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1") is False
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, record) is False
        assert sink.get(ResourceType.SLEEP, "s1") is None

    @pytest.mark.asyncio
    async def test_delete_unknown_record(self) -> None:
        sink = InMemoryRecordSink()
        assert await sink.apply_delete(ResourceType.WORKOUT, TEST_USER_ID, "404", deleted_at=T0) is False
        assert len(sink) == 0

    @pytest.mark.asyncio
    async def test_delete_before_first_sighting_blocks_older_version(self) -> None:
        sink = InMemoryRecordSink()
        await sink.apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1", deleted_at=T0)

        older = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0 - timedelta(minutes=1))
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, older) is False
        assert sink.get(ResourceType.SLEEP, "s1") is None

        newer = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0 + timedelta(minutes=1))
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, newer) is True

    @pytest.mark.asyncio
    async def test_delete_time_raises_tombstone_over_stored_version(self) -> None:
        sink = InMemoryRecordSink()
        await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, whoop_record(ResourceType.SLEEP, "s1", updated_at=T0))
        await sink.apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1", deleted_at=T0 + timedelta(hours=1))

        between = whoop_record(ResourceType.SLEEP, "s1", updated_at=T0 + timedelta(minutes=30))
        assert await sink.apply_update(ResourceType.SLEEP, TEST_USER_ID, between) is False


class TestPostgresRecordSink:
    def test_upsert_only_overwrites_older_rows(self) -> None:
        query = PostgresRecordSink._UPSERT
        assert "ON CONFLICT (resource_type, record_id)" in query
        assert "EXCLUDED.record_updated_at > whoop_records.record_updated_at" in query
        assert query.endswith("RETURNING record_id")

    @pytest.mark.asyncio
    async def test_apply_update_reports_write(self) -> None:
        fetchval = AsyncMock(return_value="s1")
        with patch("src.whoop.sync.sink.database.fetchval", fetchval):
            applied = await PostgresRecordSink().apply_update(
                ResourceType.SLEEP, TEST_USER_ID, whoop_record(ResourceType.SLEEP, "s1", updated_at=T0)
            )
        assert applied is True
        args = fetchval.await_args.args
        assert args[1:5] == ("sleep", "s1", TEST_USER_ID, T0)

    @pytest.mark.asyncio
    async def test_apply_delete_upserts_tombstone(self) -> None:
        fetchval = AsyncMock(return_value=None)
        with patch("src.whoop.sync.sink.database.fetchval", fetchval):
            removed = await PostgresRecordSink().apply_delete(
                ResourceType.SLEEP, TEST_USER_ID, "s1", deleted_at=T0
            )
        assert removed is False
        query, *args = fetchval.await_args.args
        assert query.startswith("INSERT INTO whoop_records")
        assert "ON CONFLICT (resource_type, record_id)" in query
        assert "GREATEST(whoop_records.record_updated_at, EXCLUDED.record_updated_at)" in query
        assert args == ["sleep", "s1", TEST_USER_ID, T0]

    @pytest.mark.asyncio
    async def test_apply_delete_reports_removed_live_row(self) -> None:
        with patch("src.whoop.sync.sink.database.fetchval", AsyncMock(return_value=True)):
            assert await PostgresRecordSink().apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1") is True
        with patch("src.whoop.sync.sink.database.fetchval", AsyncMock(return_value=False)):
            assert await PostgresRecordSink().apply_delete(ResourceType.SLEEP, TEST_USER_ID, "s1") is False
