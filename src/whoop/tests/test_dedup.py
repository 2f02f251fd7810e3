"""Tests for the trace_id dedup window."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from src.whoop.sync.dedup import InMemoryDedupWindow, PostgresDedupWindow
from src.whoop.tests.conftest import FakeClock


class TestInMemoryDedupWindow:
    @pytest.mark.asyncio
    async def test_first_sighting_is_new(self) -> None:
        window = InMemoryDedupWindow()
        assert await window.check_and_mark("t1") is True

    @pytest.mark.asyncio
    async def test_repeat_is_duplicate(self) -> None:
        window = InMemoryDedupWindow()
        await window.check_and_mark("t1")
        assert await window.check_and_mark("t1") is False
        assert await window.check_and_mark("t1") is False
        assert len(window) == 1

    @pytest.mark.asyncio
    async def test_expired_trace_is_new_again(self) -> None:
        clock = FakeClock()
        window = InMemoryDedupWindow(ttl_seconds=60, clock=clock)
        await window.check_and_mark("t1")
        clock.now += 59
        assert window.is_seen("t1")
        clock.now += 2
        assert not window.is_seen("t1")
        assert await window.check_and_mark("t1") is True

    @pytest.mark.asyncio
    async def test_oldest_evicted_when_full(self) -> None:
        window = InMemoryDedupWindow(max_entries=3)
        for trace in ("t1", "t2", "t3", "t4"):
            await window.check_and_mark(trace)
        assert len(window) == 3
        assert not window.is_seen("t1")
        assert window.is_seen("t4")

    @pytest.mark.asyncio
    async def test_forget(self) -> None:
        window = InMemoryDedupWindow()
        await window.check_and_mark("t1")
        await window.forget("t1")
        await window.forget("never-seen")
        assert await window.check_and_mark("t1") is True

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        window = InMemoryDedupWindow()
        await window.check_and_mark("t1")
        window.clear()
        assert len(window) == 0


class TestPostgresDedupWindow:
    @pytest.mark.asyncio
    async def test_inserted_row_means_new(self) -> None:
        fetchval = AsyncMock(return_value="t1")
        with patch("src.whoop.sync.dedup.database.fetchval", fetchval):
            assert await PostgresDedupWindow(ttl_seconds=60).check_and_mark("t1") is True
        query = fetchval.await_args.args[0]
        assert "ON CONFLICT (trace_id)" in query
        assert "expires_at <= NOW()" in query

    @pytest.mark.asyncio
    async def test_no_row_means_duplicate(self) -> None:
        with patch("src.whoop.sync.dedup.database.fetchval", AsyncMock(return_value=None)):
            assert await PostgresDedupWindow().check_and_mark("t1") is False

    @pytest.mark.asyncio
    async def test_expired_rows_pruned_periodically(self) -> None:
        fetchval = AsyncMock(return_value="t")
        execute = AsyncMock(return_value="DELETE 7")
        window = PostgresDedupWindow(ttl_seconds=60, prune_every=3)
        with patch("src.whoop.sync.dedup.database.fetchval", fetchval), patch(
            "src.whoop.sync.dedup.database.execute", execute
        ):
            for trace in ("t1", "t2"):
                await window.check_and_mark(trace)
            execute.assert_not_awaited()

            await window.check_and_mark("t3")

        execute.assert_awaited_once_with(
            "DELETE FROM whoop_webhook_traces WHERE expires_at <= NOW()"
        )

    @pytest.mark.asyncio
    async def test_prune_reports_removed_rows(self) -> None:
        with patch("src.whoop.sync.dedup.database.execute", AsyncMock(return_value="DELETE 12")):
            assert await PostgresDedupWindow().prune() == 12
        with patch("src.whoop.sync.dedup.database.execute", AsyncMock(return_value="DELETE 0")):
            assert await PostgresDedupWindow().prune() == 0
