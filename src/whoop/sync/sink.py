"""The "apply update" sink shared by the webhook and reconciliation paths.

Neither path guarantees ordering relative to the other, and both may hand
over the same record more than once.  Sinks converge by keying every record on
``(resource_type, record id)`` and only applying a record whose ``updated_at``
is newer than the stored one, so a repeat is a no-op.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from src.services import database
from src.whoop.base import ResourceType, record_id, record_updated_at

logger = logging.getLogger("whoopsync.sync.sink")


class RecordSink(ABC):
    """Application-defined destination for fetched WHOOP records."""

    @abstractmethod
    async def apply_update(
        self, resource_type: ResourceType, user_id: int, record: dict
    ) -> bool:
        """Apply the current state of one record.

        Returns:
            True if stored state changed, False for a no-op repeat or stale record.
        """

    @abstractmethod
    async def apply_delete(
        self,
        resource_type: ResourceType,
        user_id: int,
        object_id: str,
        deleted_at: datetime | None = None,
    ) -> bool:
        """Apply a deletion.

        The tombstone carries ``deleted_at`` (the receipt time of the deletion
        event) so that an older version arriving later is ignored, even for a
        record that was never stored.

        Returns:
            True if a live record was removed.
        """


@dataclass
class StoredRecord:
    user_id: int
    updated_at: datetime | None
    payload: dict
    deleted: bool = False


def _is_newer(incoming: datetime | None, current: datetime | None) -> bool:
    if current is None:
        return True
    if incoming is None:
        return False
    return incoming > current


class InMemoryRecordSink(RecordSink):
    """Dict-backed sink keeping the latest version of every record.

    Deletions leave a tombstone so a late webhook fetch or reconciliation
    page carrying an older version does not bring the record back.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[ResourceType, str], StoredRecord] = {}

    async def apply_update(
        self, resource_type: ResourceType, user_id: int, record: dict
    ) -> bool:
        rid = record_id(resource_type, record)
        if rid is None:
            logger.warning("Dropping %s record without %s", resource_type.value, resource_type.id_field)
            return False
        key = (resource_type, rid)
        updated_at = record_updated_at(record)
        current = self._records.get(key)
        if current is not None and not _is_newer(updated_at, current.updated_at):
            return False
        self._records[key] = StoredRecord(user_id=user_id, updated_at=updated_at, payload=record)
        logger.debug("Applied %s %s for user %s", resource_type.value, rid, user_id)
        return True

    async def apply_delete(
        self,
        resource_type: ResourceType,
        user_id: int,
        object_id: str,
        deleted_at: datetime | None = None,
    ) -> bool:
        key = (resource_type, str(object_id))
        current = self._records.get(key)
        if current is not None and current.deleted:
            return False
        known = current.updated_at if current else None
        self._records[key] = StoredRecord(
            user_id=user_id,
            updated_at=deleted_at if _is_newer(deleted_at, known) else known,
            payload={},
            deleted=True,
        )
        return current is not None

    def get(self, resource_type: ResourceType, object_id: str) -> dict | None:
        stored = self._records.get((resource_type, str(object_id)))
        if stored is None or stored.deleted:
            return None
        return stored.payload

    def snapshot(self) -> dict[tuple[ResourceType, str], dict]:
        """Return the live records, keyed like the store."""
        return {k: v.payload for k, v in self._records.items() if not v.deleted}

    def __len__(self) -> int:
        return sum(1 for v in self._records.values() if not v.deleted)


class PostgresRecordSink(RecordSink):
    """Sink writing the latest payload of each record to ``whoop_records``."""

    _UPSERT = database.build_upsert_query(
        "whoop_records",
        ["resource_type", "record_id", "user_id", "record_updated_at", "payload", "deleted"],
        conflict_columns=["resource_type", "record_id"],
        update_where=(
            "whoop_records.record_updated_at IS NULL "
            "OR EXCLUDED.record_updated_at > whoop_records.record_updated_at"
        ),
    ) + " RETURNING record_id"

    async def apply_update(
        self, resource_type: ResourceType, user_id: int, record: dict
    ) -> bool:
        rid = record_id(resource_type, record)
        if rid is None:
            logger.warning("Dropping %s record without %s", resource_type.value, resource_type.id_field)
            return False
        written = await database.fetchval(
            self._UPSERT,
            resource_type.value,
            rid,
            user_id,
            record_updated_at(record),
            json.dumps(record),
            False,
        )
        return written is not None

    _DELETE = (
        "INSERT INTO whoop_records "
        "(resource_type, record_id, user_id, record_updated_at, payload, deleted) "
        "VALUES ($1, $2, $3, $4, '{}'::jsonb, TRUE) "
        "ON CONFLICT (resource_type, record_id) DO UPDATE SET "
        "deleted = TRUE, payload = '{}'::jsonb, "
        "record_updated_at = GREATEST(whoop_records.record_updated_at, EXCLUDED.record_updated_at), "
        "updated_at = NOW() "
        "WHERE NOT whoop_records.deleted "
        "RETURNING (xmax <> 0) AS removed"
    )

    async def apply_delete(
        self,
        resource_type: ResourceType,
        user_id: int,
        object_id: str,
        deleted_at: datetime | None = None,
    ) -> bool:
        # xmax is 0 for a freshly inserted tombstone, set for an updated live row
        removed = await database.fetchval(
            self._DELETE, resource_type.value, str(object_id), user_id, deleted_at
        )
        return bool(removed)
