"""Durable per-user WHOOP token storage.

All operations are keyed by WHOOP ``user_id``.  A ``put`` is an atomic upsert
of the whole record; concurrent writers for the same user are already
serialized by the Token Refresh Coordinator's single-flight refresh, so no
cross-user or read-modify-write locking is needed here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from src.services import database
from src.whoop.base import TokenRecord, TokenState, utc_now
from src.whoop.errors import TokenNotFound

logger = logging.getLogger("whoopsync.tokens.store")


class TokenStore(ABC):
    """Storage interface for TokenRecords."""

    @abstractmethod
    async def get(self, user_id: int) -> TokenRecord:
        """Return the record for ``user_id``.

        Raises:
            TokenNotFound: If the user has never connected.
        """

    @abstractmethod
    async def put(self, record: TokenRecord) -> None:
        """Insert or replace the record for ``record.user_id``."""

    @abstractmethod
    async def list_records(
        self, states: Iterable[TokenState] | None = None
    ) -> list[TokenRecord]:
        """Return all records, optionally filtered by state."""

    @abstractmethod
    async def delete(self, user_id: int) -> None:
        """Remove the record if it exists."""

    async def mark_revoked(self, user_id: int) -> TokenRecord:
        """Mark the user's tokens REVOKED.  Terminal until re-authorization.

        Raises:
            TokenNotFound: If the user has never connected.
        """
        record = await self.get(user_id)
        revoked = record.with_state(TokenState.REVOKED)
        await self.put(revoked)
        logger.info("Marked WHOOP tokens revoked for user %s", user_id)
        return revoked


class InMemoryTokenStore(TokenStore):
    """Process-local token store for development and tests.

    Every method completes without suspending between read and write, so
    each call is atomic under asyncio.
    """

    def __init__(self, records: Iterable[TokenRecord] = ()) -> None:
        self._records: dict[int, TokenRecord] = {r.user_id: r for r in records}

    async def get(self, user_id: int) -> TokenRecord:
        try:
            return self._records[user_id]
        except KeyError:
            raise TokenNotFound(user_id) from None

    async def put(self, record: TokenRecord) -> None:
        self._records[record.user_id] = record

    async def list_records(
        self, states: Iterable[TokenState] | None = None
    ) -> list[TokenRecord]:
        wanted = set(states) if states is not None else None
        return [
            r for r in self._records.values() if wanted is None or r.state in wanted
        ]

    async def delete(self, user_id: int) -> None:
        self._records.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._records)


_TOKEN_COLUMNS = [
    "user_id",
    "access_token",
    "refresh_token",
    "expires_at",
    "scopes",
    "state",
]


class PostgresTokenStore(TokenStore):
    """Token store backed by the ``whoop_tokens`` table."""

    _UPSERT = database.build_upsert_query(
        "whoop_tokens", _TOKEN_COLUMNS, conflict_columns=["user_id"]
    )

    async def get(self, user_id: int) -> TokenRecord:
        row = await database.fetchrow(
            "SELECT * FROM whoop_tokens WHERE user_id = $1", user_id
        )
        if row is None:
            raise TokenNotFound(user_id)
        return _row_to_record(row)

    async def put(self, record: TokenRecord) -> None:
        await database.execute(
            self._UPSERT,
            record.user_id,
            record.access_token,
            record.refresh_token,
            record.expires_at,
            sorted(record.scopes),
            record.state.value,
        )

    async def list_records(
        self, states: Iterable[TokenState] | None = None
    ) -> list[TokenRecord]:
        if states is None:
            rows = await database.fetch("SELECT * FROM whoop_tokens ORDER BY user_id")
        else:
            rows = await database.fetch(
                "SELECT * FROM whoop_tokens WHERE state = ANY($1::text[]) ORDER BY user_id",
                [s.value for s in states],
            )
        return [_row_to_record(r) for r in rows]

    async def delete(self, user_id: int) -> None:
        await database.execute("DELETE FROM whoop_tokens WHERE user_id = $1", user_id)


def _row_to_record(row) -> TokenRecord:
    return TokenRecord(
        user_id=row["user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        scopes=frozenset(row["scopes"] or ()),
        state=TokenState(row["state"]),
        updated_at=row["updated_at"] or utc_now(),
    )
