"""Exponential backoff with jitter for WHOOP API calls.

One policy object is shared by the webhook workers, reconciliation sweeps and
token refresh.  Retries are decided by error type:

- ``TransientNetworkFailure``: wait ``base_delay * 2**attempt`` (capped, jittered)
- ``RateLimited``: retry immediately; the client's per-endpoint gate already
  holds the next call until ``Retry-After`` has passed
- ``AuthExpired``: retry immediately; the caller refreshed the token first
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from src.whoop.errors import AuthExpired, RateLimited, TransientNetworkFailure

logger = logging.getLogger("whoopsync.backoff")

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[Exception], ...] = (
    TransientNetworkFailure,
    RateLimited,
    AuthExpired,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry limits for one class of call.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay:   Delay before the second attempt, in seconds.
        max_delay:    Cap on any single delay.
        jitter:       Fraction of the delay added or removed at random (0.0–1.0).
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.3

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, delay)


async def call_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    retry_on: tuple[type[Exception], ...] = DEFAULT_RETRY_ON,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "WHOOP call",
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is spent.

    Errors outside ``retry_on`` propagate immediately.  When attempts run out
    the last error propagates.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as exc:
            if attempt + 1 >= attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", label, attempts, exc
                )
                raise
            if isinstance(exc, TransientNetworkFailure):
                delay = policy.compute_delay(attempt)
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.1fs",
                    attempt + 1, attempts - 1, label, exc, delay,
                )
                await sleep(delay)
            else:
                logger.info(
                    "Retry %d/%d for %s (%s)", attempt + 1, attempts - 1, label, type(exc).__name__
                )
    raise AssertionError("unreachable")  # pragma: no cover
