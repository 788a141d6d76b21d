"""
Relationship graph: directed, typed, weighted edges between entries.

Queried only by direct edges per entry. There is no cycle detection and
no transitive closure.
"""

import logging
import sqlite3
from typing import Any, Optional

from .document_store import DocumentStore, json_or_empty, parse_json_dict
from .errors import NotFoundError, ValidationError
from .types import RELATIONSHIP_TYPES, Relationship, utc_now

logger = logging.getLogger(__name__)

REL_COLUMNS = (
    "id, from_entry_id, to_entry_id, type, strength, metadata_json, "
    "created_at, updated_at"
)


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        from_entry_id=row["from_entry_id"],
        to_entry_id=row["to_entry_id"],
        type=row["type"],
        strength=row["strength"],
        metadata=parse_json_dict(row["metadata_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def normalize_relationship_type(type: str) -> str:
    """Accept 'depends-on' or 'depends_on'; reject anything outside the vocabulary."""
    normalized = (type or "").strip().lower().replace("-", "_")
    if normalized not in RELATIONSHIP_TYPES:
        allowed = ", ".join(RELATIONSHIP_TYPES)
        raise ValidationError(f"Unknown relationship type {type!r} (allowed: {allowed})")
    return normalized


class RelationshipGraph:
    """Relationship rows in a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self._store = store

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._store.connection

    def create(
        self,
        from_id: int,
        to_id: int,
        type: str,
        strength: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Relationship:
        """
        Create a single directed edge.

        Raises:
            ValidationError: unknown relationship type
            NotFoundError: either endpoint does not exist
        """
        rel_type = normalize_relationship_type(type)
        for entry_id in (from_id, to_id):
            if not self._store.entry_exists(entry_id):
                raise NotFoundError(f"Entry not found: {entry_id}")

        now = utc_now()
        cursor = self._conn.execute("""
            INSERT INTO relationships
            (from_entry_id, to_entry_id, type, strength, metadata_json,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (from_id, to_id, rel_type, float(strength), json_or_empty(metadata), now, now))
        logger.debug("Relationship %d: %d -%s-> %d", cursor.lastrowid, from_id, rel_type, to_id)
        return Relationship(
            id=cursor.lastrowid,
            from_entry_id=from_id,
            to_entry_id=to_id,
            type=rel_type,
            strength=float(strength),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    def create_bidirectional(
        self,
        from_id: int,
        to_id: int,
        type: str,
        strength: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[Relationship, Relationship]:
        """
        Create an edge and its mirror with the same type, strength and metadata.

        Both rows are written atomically; afterwards they are independent
        (deleting one leaves the other).

        Returns:
            (forward, reverse)
        """
        with self._store.transaction():
            forward = self.create(from_id, to_id, type, strength, metadata)
            reverse = self.create(to_id, from_id, type, strength, metadata)
        return forward, reverse

    def get(self, rel_id: int) -> Optional[Relationship]:
        row = self._conn.execute(
            f"SELECT {REL_COLUMNS} FROM relationships WHERE id = ?", (rel_id,)
        ).fetchone()
        return _row_to_relationship(row) if row is not None else None

    def edges_from(self, entry_id: int) -> list[Relationship]:
        """Outgoing edges of an entry, oldest first."""
        cursor = self._conn.execute(
            f"SELECT {REL_COLUMNS} FROM relationships WHERE from_entry_id = ? ORDER BY id",
            (entry_id,),
        )
        return [_row_to_relationship(row) for row in cursor]

    def edges_to(self, entry_id: int) -> list[Relationship]:
        """Incoming edges of an entry, oldest first."""
        cursor = self._conn.execute(
            f"SELECT {REL_COLUMNS} FROM relationships WHERE to_entry_id = ? ORDER BY id",
            (entry_id,),
        )
        return [_row_to_relationship(row) for row in cursor]

    def delete(self, rel_id: int) -> bool:
        """Delete one edge. The mirror edge, if any, is left alone."""
        cursor = self._conn.execute("DELETE FROM relationships WHERE id = ?", (rel_id,))
        return cursor.rowcount > 0

    def delete_for_entry(self, entry_id: int) -> int:
        """Delete outgoing and incoming edges of an entry. Returns rows deleted."""
        cursor = self._conn.execute(
            "DELETE FROM relationships WHERE from_entry_id = ? OR to_entry_id = ?",
            (entry_id, entry_id),
        )
        return cursor.rowcount
