"""WHOOP webhook signature verification.

WHOOP signs each webhook with HMAC-SHA256 over the concatenation of the
``X-WHOOP-Signature-Timestamp`` header and the raw request body, keyed by
the app's client secret, and sends the base64 digest in
``X-WHOOP-Signature``.

Verification must run against the exact bytes received, before any JSON
parsing.  A timestamp outside the tolerance window is rejected to stop
replays of captured requests.

Usage::

    verifier = SignatureVerifier(secret=settings.whoop_client_secret)
    if not verifier.verify(timestamp, body, signature):
        ...  # reject with 403
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Callable

DEFAULT_TOLERANCE_SECONDS = 300

# Timestamps above this are epoch milliseconds (WHOOP's format)
_MILLIS_THRESHOLD = 10**11


def compute_signature(timestamp: str, raw_body: bytes, secret: bytes | str) -> str:
    """Return the base64 HMAC-SHA256 signature WHOOP would send."""
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    digest = hmac.new(key, timestamp.encode("utf-8") + raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _timestamp_seconds(timestamp: str) -> float:
    value = int(timestamp.strip())
    if value >= _MILLIS_THRESHOLD:
        return value / 1000.0
    return float(value)


def verify(
    timestamp: str | None,
    raw_body: bytes | None,
    signature_header: str | None,
    secret: bytes | str,
    *,
    tolerance_seconds: float = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a WHOOP webhook signature.

    Never raises.  Any missing or malformed input, a signature mismatch, or a
    timestamp further than ``tolerance_seconds`` from ``now`` yields False.

    Args:
        timestamp:         Raw ``X-WHOOP-Signature-Timestamp`` header value.
        raw_body:          Unparsed request body.
        signature_header:  Raw ``X-WHOOP-Signature`` header value.
        secret:            Shared signing secret.
        tolerance_seconds: Allowed clock skew in either direction.
        now:               Current epoch seconds (defaults to ``time.time()``).

    Returns:
        True only if the request is authentic and fresh.
    """
    if not timestamp or raw_body is None or not signature_header or not secret:
        return False
    try:
        sent_at = _timestamp_seconds(timestamp)
        current = time.time() if now is None else now
        if abs(current - sent_at) > tolerance_seconds:
            return False
        expected = compute_signature(timestamp, bytes(raw_body), secret)
        return hmac.compare_digest(
            expected.encode("ascii"), signature_header.strip().encode("utf-8")
        )
    except (TypeError, ValueError, UnicodeError, OverflowError):
        return False


class SignatureVerifier:
    """Signature verifier bound to one secret, tolerance and clock."""

    def __init__(
        self,
        secret: bytes | str,
        tolerance_seconds: float = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(
        self, timestamp: str | None, raw_body: bytes, signature_header: str | None
    ) -> bool:
        return verify(
            timestamp,
            raw_body,
            signature_header,
            self._secret,
            tolerance_seconds=self.tolerance_seconds,
            now=self._clock(),
        )

    def sign(self, timestamp: str, raw_body: bytes) -> str:
        return compute_signature(timestamp, raw_body, self._secret)
