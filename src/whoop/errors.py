"""Error taxonomy for the WHOOP integration.

The client raises these; the coordinator, webhook pipeline and reconciliation
scheduler catch them at their boundaries.  Nothing here ever reaches WHOOP as
an HTTP error; the webhook endpoint acknowledges regardless.
"""

from __future__ import annotations


class WhoopError(Exception):
    """Base class for every error raised by the WHOOP integration."""


class AuthExpired(WhoopError):
    """The access token was rejected (HTTP 401).

    Recovered locally by refreshing the token and retrying the call.
    """


class ReauthorizationRequired(WhoopError):
    """The refresh token is invalid, used, or revoked.

    Fatal for the user until they reconnect their WHOOP account.
    """

    def __init__(self, user_id: int | None = None, reason: str = "") -> None:
        self.user_id = user_id
        self.reason = reason
        message = "WHOOP re-authorization required"
        if user_id is not None:
            message += f" for user {user_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SignatureInvalid(WhoopError):
    """An inbound webhook failed signature or timestamp verification."""


class RateLimited(WhoopError):
    """WHOOP answered 429.  ``retry_after`` is the wait in seconds."""

    def __init__(self, retry_after: float, endpoint: str = "") -> None:
        self.retry_after = retry_after
        self.endpoint = endpoint
        super().__init__(f"Rate limited on {endpoint or 'WHOOP API'}; retry after {retry_after:.0f}s")


class ResourceGone(WhoopError):
    """The requested record no longer exists (HTTP 404).  Nothing to apply."""


class TransientNetworkFailure(WhoopError):
    """Connection error, timeout, or 5xx; safe to retry with backoff."""


class TokenNotFound(WhoopError, KeyError):
    """No TokenRecord exists for the user."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"No WHOOP token record for user {user_id}")

    def __str__(self) -> str:
        return self.args[0]


class WhoopAPIError(WhoopError):
    """WHOOP returned a status the integration has no recovery path for."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"WHOOP API error {status_code}: {detail[:200]}")
