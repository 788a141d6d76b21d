"""
Collections: named grouping buckets for entries.

An entry points at most at one collection. Collections never own entry
lifecycle.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .document_store import DocumentStore, json_or_empty, parse_json_dict
from .errors import ValidationError
from .types import Collection, format_utc_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3B82F6"
DEFAULT_ICON = "📁"
RECENT_DAYS = 7


def _row_to_collection(row: sqlite3.Row) -> Collection:
    keys = row.keys()
    return Collection(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        icon=row["icon"],
        is_private=bool(row["is_private"]),
        metadata=parse_json_dict(row["metadata_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        entry_count=row["entry_count"] if "entry_count" in keys else 0,
        recent_entry_count=row["recent_entry_count"] if "recent_entry_count" in keys else 0,
    )


class CollectionStore:
    """Collection rows in a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self._store = store

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._store.connection

    def create(
        self,
        name: str,
        description: Optional[str] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        *,
        is_private: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Collection:
        """Create a collection. Color and icon fall back to defaults."""
        if not name or not name.strip():
            raise ValidationError("Collection name must not be empty")
        now = utc_now()
        color = color or DEFAULT_COLOR
        icon = icon or DEFAULT_ICON
        cursor = self._conn.execute("""
            INSERT INTO collections
            (name, description, color, icon, is_private, metadata_json,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (name.strip(), description, color, icon, int(is_private),
              json_or_empty(metadata), now, now))
        logger.info("Created collection %d %r", cursor.lastrowid, name)
        return Collection(
            id=cursor.lastrowid,
            name=name.strip(),
            description=description,
            color=color,
            icon=icon,
            is_private=is_private,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    def get(self, collection_id: int) -> Optional[Collection]:
        row = self._conn.execute("""
            SELECT id, name, description, color, icon, is_private,
                   metadata_json, created_at, updated_at
            FROM collections WHERE id = ?
        """, (collection_id,)).fetchone()
        return _row_to_collection(row) if row is not None else None

    def get_many(self, ids: list[int]) -> dict[int, Collection]:
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        cursor = self._conn.execute(f"""
            SELECT id, name, description, color, icon, is_private,
                   metadata_json, created_at, updated_at
            FROM collections WHERE id IN ({placeholders})
        """, tuple(ids))
        return {row["id"]: _row_to_collection(row) for row in cursor}

    def find_by_name(self, name: str) -> Optional[Collection]:
        """First collection with exactly this name (oldest wins)."""
        row = self._conn.execute("""
            SELECT id, name, description, color, icon, is_private,
                   metadata_json, created_at, updated_at
            FROM collections WHERE name = ? ORDER BY id LIMIT 1
        """, (name,)).fetchone()
        return _row_to_collection(row) if row is not None else None

    def list_all(self, *, now: Optional[datetime] = None) -> list[Collection]:
        """All collections with total and recent entry counts, oldest first."""
        now = now or datetime.now(timezone.utc)
        cutoff = format_utc_timestamp(now - timedelta(days=RECENT_DAYS))
        cursor = self._conn.execute("""
            SELECT c.id, c.name, c.description, c.color, c.icon, c.is_private,
                   c.metadata_json, c.created_at, c.updated_at,
                   COUNT(e.id) AS entry_count,
                   COALESCE(SUM(CASE WHEN e.created_at >= ? THEN 1 ELSE 0 END), 0)
                       AS recent_entry_count
            FROM collections c
            LEFT JOIN entries e ON e.collection_id = c.id
            GROUP BY c.id
            ORDER BY c.id
        """, (cutoff,))
        return [_row_to_collection(row) for row in cursor]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM collections").fetchone()[0]
