"""
Metadata store: typed key/value facts attached to one entry.

Values are stored in canonical string form with a declared type;
conversion back to a Python value happens only through coerce_value().
"""

import logging
import sqlite3
from typing import Any, Optional

from .document_store import DocumentStore
from .errors import ValidationError
from .types import Metadata, MetadataType, MetadataValue, utc_now

logger = logging.getLogger(__name__)


def _row_to_metadata(row: sqlite3.Row) -> Metadata:
    return Metadata(
        entry_id=row["entry_id"],
        key=row["key"],
        value=row["value"],
        type=MetadataType.parse(row["type"]),
    )


class MetadataStore:
    """Per-entry metadata rows in a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self._store = store

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._store.connection

    def set(self, entry_id: int, key: str, value: MetadataValue) -> Metadata:
        """
        Upsert one metadata pair.

        Setting an existing key overwrites its value and type.
        """
        if not key or not key.strip():
            raise ValidationError("Metadata key must not be empty")
        now = utc_now()
        self._conn.execute("""
            INSERT INTO metadata (entry_id, key, value, type, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (entry_id, key) DO UPDATE SET
                value = excluded.value,
                type = excluded.type,
                updated_at = excluded.updated_at
        """, (entry_id, key, value.raw, value.type.value, now, now))
        return Metadata(entry_id=entry_id, key=key, value=value.raw, type=value.type)

    def set_value(
        self,
        entry_id: int,
        key: str,
        value: Any,
        type: "MetadataType | str | None" = None,
    ) -> Metadata:
        """Upsert a Python value; the type is inferred unless given."""
        return self.set(entry_id, key, MetadataValue.of(value, type))

    def get(self, entry_id: int, key: str) -> Optional[Metadata]:
        row = self._conn.execute(
            "SELECT entry_id, key, value, type FROM metadata WHERE entry_id = ? AND key = ?",
            (entry_id, key),
        ).fetchone()
        return _row_to_metadata(row) if row is not None else None

    def get_value(self, entry_id: int, key: str, default: Any = None) -> Any:
        """Typed value for key, or default when the key is not set."""
        meta = self.get(entry_id, key)
        return meta.typed_value if meta is not None else default

    def list_for_entry(self, entry_id: int) -> list[Metadata]:
        cursor = self._conn.execute(
            "SELECT entry_id, key, value, type FROM metadata WHERE entry_id = ? ORDER BY key",
            (entry_id,),
        )
        return [_row_to_metadata(row) for row in cursor]

    def list_for_entries(self, entry_ids: list[int]) -> dict[int, list[Metadata]]:
        result: dict[int, list[Metadata]] = {eid: [] for eid in entry_ids}
        if not entry_ids:
            return result
        placeholders = ",".join("?" * len(entry_ids))
        cursor = self._conn.execute(f"""
            SELECT entry_id, key, value, type FROM metadata
            WHERE entry_id IN ({placeholders})
            ORDER BY entry_id, key
        """, tuple(entry_ids))
        for row in cursor:
            result[row["entry_id"]].append(_row_to_metadata(row))
        return result

    def delete(self, entry_id: int, key: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM metadata WHERE entry_id = ? AND key = ?", (entry_id, key)
        )
        return cursor.rowcount > 0

    def delete_for_entry(self, entry_id: int) -> int:
        """Remove all metadata of an entry. Returns rows deleted."""
        cursor = self._conn.execute("DELETE FROM metadata WHERE entry_id = ?", (entry_id,))
        return cursor.rowcount
