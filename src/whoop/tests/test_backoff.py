"""Tests for the shared retry helper."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import pytest

from src.whoop.backoff import BackoffPolicy, call_with_backoff
from src.whoop.errors import (
    AuthExpired,
    RateLimited,
    ResourceGone,
    TransientNetworkFailure,
)
from src.whoop.tests.conftest import FakeClock


class TestComputeDelay:
    def test_exponential_growth_without_jitter(self) -> None:
        policy = BackoffPolicy(base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert [policy.compute_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self) -> None:
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert policy.compute_delay(10) == 5.0

    def test_jitter_stays_within_spread(self) -> None:
        policy = BackoffPolicy(base_delay=10.0, max_delay=60.0, jitter=0.3)
        rng = random.Random(42)
        for _ in range(100):
            assert 7.0 <= policy.compute_delay(0, rng) <= 13.0


class TestCallWithBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self) -> None:
        operation = AsyncMock(return_value="ok")
        clock = FakeClock()
        assert await call_with_backoff(operation, BackoffPolicy(), sleep=clock.sleep) == "ok"
        assert operation.await_count == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_succeed(self) -> None:
        operation = AsyncMock(
            side_effect=[TransientNetworkFailure("a"), TransientNetworkFailure("b"), "ok"]
        )
        clock = FakeClock()
        policy = BackoffPolicy(max_attempts=5, base_delay=1.0, jitter=0.0)
        assert await call_with_backoff(operation, policy, sleep=clock.sleep) == "ok"
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_raised_when_attempts_exhausted(self) -> None:
        errors = [TransientNetworkFailure(str(i)) for i in range(3)]
        operation = AsyncMock(side_effect=errors)
        clock = FakeClock()
        policy = BackoffPolicy(max_attempts=3, base_delay=1.0, jitter=0.0)
        with pytest.raises(TransientNetworkFailure) as exc_info:
            await call_with_backoff(operation, policy, sleep=clock.sleep)
        assert exc_info.value is errors[-1]
        assert operation.await_count == 3
        assert len(clock.sleeps) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_and_auth_expired_retry_without_sleeping(self) -> None:
        operation = AsyncMock(side_effect=[RateLimited(30), AuthExpired("401"), "ok"])
        clock = FakeClock()
        assert await call_with_backoff(operation, BackoffPolicy(), sleep=clock.sleep) == "ok"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self) -> None:
        operation = AsyncMock(side_effect=ResourceGone("404"))
        clock = FakeClock()
        with pytest.raises(ResourceGone):
            await call_with_backoff(operation, BackoffPolicy(), sleep=clock.sleep)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_restricts_retried_errors(self) -> None:
        operation = AsyncMock(side_effect=AuthExpired("401"))
        with pytest.raises(AuthExpired):
            await call_with_backoff(
                operation, BackoffPolicy(), retry_on=(TransientNetworkFailure,), sleep=FakeClock().sleep
            )
        assert operation.await_count == 1
