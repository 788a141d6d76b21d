"""
Tag registry: deduplicated tag vocabulary with a usage counter.

Find-or-create and the counter updates are read-then-write sequences;
a single writer is assumed. The UNIQUE constraint on tags.name makes a
racing duplicate create fail instead of producing two rows.
"""

import logging
import sqlite3
from typing import Iterable, Optional

from .document_store import DocumentStore
from .types import Tag, utc_now

logger = logging.getLogger(__name__)

TAG_COLUMNS = "id, name, usage_count, color, description, created_at, updated_at"


def _row_to_tag(row: sqlite3.Row) -> Tag:
    return Tag(
        id=row["id"],
        name=row["name"],
        usage_count=row["usage_count"],
        color=row["color"],
        description=row["description"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def clean_tag_names(names: Iterable[str]) -> list[str]:
    """Trim names, drop blanks, and deduplicate preserving first-seen order."""
    seen: set[str] = set()
    result = []
    for name in names:
        if name is None:
            continue
        name = str(name).strip()
        if not name or name in seen:
            continue
        seen.add(name)
        result.append(name)
    return result


class TagRegistry:
    """Tag rows and entry-tag links in a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self._store = store

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._store.connection

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    def get(self, tag_id: int) -> Optional[Tag]:
        row = self._conn.execute(
            f"SELECT {TAG_COLUMNS} FROM tags WHERE id = ?", (tag_id,)
        ).fetchone()
        return _row_to_tag(row) if row is not None else None

    def get_by_name(self, name: str) -> Optional[Tag]:
        """Exact, case-sensitive lookup."""
        row = self._conn.execute(
            f"SELECT {TAG_COLUMNS} FROM tags WHERE name = ?", (name,)
        ).fetchone()
        return _row_to_tag(row) if row is not None else None

    def find_or_create(self, name: str) -> Tag:
        """
        Find a tag by exact name, creating it with usage 0 if absent.

        Args:
            name: Tag name, compared case-sensitively as stored

        Returns:
            The existing or newly created Tag
        """
        tag = self.get_by_name(name)
        if tag is not None:
            return tag
        now = utc_now()
        cursor = self._conn.execute("""
            INSERT INTO tags (name, usage_count, created_at, updated_at)
            VALUES (?, 0, ?, ?)
        """, (name, now, now))
        logger.debug("Created tag %r", name)
        return Tag(id=cursor.lastrowid, name=name, usage_count=0,
                   created_at=now, updated_at=now)

    def list_all(self) -> list[Tag]:
        cursor = self._conn.execute(f"SELECT {TAG_COLUMNS} FROM tags ORDER BY name")
        return [_row_to_tag(row) for row in cursor]

    def popular(self, limit: int = 20) -> list[Tag]:
        """
        Most used tags, by usage count descending.

        Ties are broken by tag id ascending, i.e. creation order.
        """
        cursor = self._conn.execute(f"""
            SELECT {TAG_COLUMNS} FROM tags
            ORDER BY usage_count DESC, id ASC
            LIMIT ?
        """, (limit,))
        return [_row_to_tag(row) for row in cursor]

    # -------------------------------------------------------------------------
    # Usage counter
    # -------------------------------------------------------------------------

    def increment_usage(self, tag_id: int) -> None:
        self._conn.execute("""
            UPDATE tags SET usage_count = usage_count + 1, updated_at = ?
            WHERE id = ?
        """, (utc_now(), tag_id))

    def decrement_usage(self, tag_id: int) -> None:
        """Decrement usage, never going below zero."""
        self._conn.execute("""
            UPDATE tags SET usage_count = usage_count - 1, updated_at = ?
            WHERE id = ? AND usage_count > 0
        """, (utc_now(), tag_id))

    def set_usage(self, tag_id: int, count: int) -> None:
        """Overwrite the usage counter (negative values clamp to zero)."""
        self._conn.execute("""
            UPDATE tags SET usage_count = ?, updated_at = ?
            WHERE id = ?
        """, (max(0, int(count)), utc_now(), tag_id))

    # -------------------------------------------------------------------------
    # Entry links
    # -------------------------------------------------------------------------

    def is_linked(self, entry_id: int, tag_id: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM entry_tags WHERE entry_id = ? AND tag_id = ?",
            (entry_id, tag_id),
        ).fetchone()
        return row is not None

    def link(self, entry_id: int, tag_id: int, *, auto: bool = False) -> bool:
        """
        Link a tag to an entry without touching usage.

        An explicit link over an existing auto-suggested one upgrades it.

        Returns:
            True if the link is new (or was upgraded to explicit)
        """
        row = self._conn.execute(
            "SELECT auto FROM entry_tags WHERE entry_id = ? AND tag_id = ?",
            (entry_id, tag_id),
        ).fetchone()
        if row is None:
            self._conn.execute("""
                INSERT INTO entry_tags (entry_id, tag_id, auto, created_at)
                VALUES (?, ?, ?, ?)
            """, (entry_id, tag_id, int(auto), utc_now()))
            return True
        if row["auto"] and not auto:
            self._conn.execute(
                "UPDATE entry_tags SET auto = 0 WHERE entry_id = ? AND tag_id = ?",
                (entry_id, tag_id),
            )
            return True
        return False

    def attach(
        self,
        entry_id: int,
        names: Iterable[str],
        *,
        increment_usage: bool = True,
    ) -> list[Tag]:
        """
        Attach tags to an entry by name (find-or-create, then link).

        Names are trimmed and deduplicated; blank names are skipped.
        With increment_usage (the explicit path) each newly linked tag's
        usage goes up by one. The auto-suggested path passes False: its
        links are flagged auto and never counted.

        Returns:
            The tags that were newly linked
        """
        auto = not increment_usage
        linked = []
        for name in clean_tag_names(names):
            tag = self.find_or_create(name)
            if not self.link(entry_id, tag.id, auto=auto):
                continue
            if increment_usage:
                self.increment_usage(tag.id)
                tag.usage_count += 1
            linked.append(tag)
        return linked

    def _unlink(self, entry_id: int, tag_id: int) -> None:
        row = self._conn.execute(
            "SELECT auto FROM entry_tags WHERE entry_id = ? AND tag_id = ?",
            (entry_id, tag_id),
        ).fetchone()
        if row is None:
            return
        self._conn.execute(
            "DELETE FROM entry_tags WHERE entry_id = ? AND tag_id = ?",
            (entry_id, tag_id),
        )
        if not row["auto"]:
            self.decrement_usage(tag_id)

    def sync(self, entry_id: int, names: Iterable[str]) -> list[Tag]:
        """
        Make the entry's tag links exactly the given names, all explicit.

        New links increment usage; removed explicit links decrement it.

        Returns:
            The entry's tags after the sync
        """
        wanted = clean_tag_names(names)
        for tag in self.list_for_entry(entry_id):
            if tag.name not in wanted:
                self._unlink(entry_id, tag.id)
        self.attach(entry_id, wanted)
        return self.list_for_entry(entry_id)

    def detach_all(self, entry_id: int) -> list[Tag]:
        """
        Remove every tag link of an entry.

        Usage is decremented for each explicitly attached tag; auto-suggested
        links were never counted and are simply removed.

        Returns:
            The tags that were linked
        """
        tags = self.list_for_entry(entry_id)
        for tag in tags:
            self._unlink(entry_id, tag.id)
        return tags

    def list_for_entry(self, entry_id: int) -> list[Tag]:
        """Tags linked to an entry, in link order."""
        cursor = self._conn.execute("""
            SELECT t.id, t.name, t.usage_count, t.color, t.description,
                   t.created_at, t.updated_at
            FROM entry_tags et JOIN tags t ON t.id = et.tag_id
            WHERE et.entry_id = ?
            ORDER BY et.rowid
        """, (entry_id,))
        return [_row_to_tag(row) for row in cursor]

    def list_for_entries(self, entry_ids: list[int]) -> dict[int, list[Tag]]:
        """Tags for many entries at once: entry id -> tags."""
        result: dict[int, list[Tag]] = {eid: [] for eid in entry_ids}
        if not entry_ids:
            return result
        placeholders = ",".join("?" * len(entry_ids))
        cursor = self._conn.execute(f"""
            SELECT et.entry_id, t.id, t.name, t.usage_count, t.color,
                   t.description, t.created_at, t.updated_at
            FROM entry_tags et JOIN tags t ON t.id = et.tag_id
            WHERE et.entry_id IN ({placeholders})
            ORDER BY et.rowid
        """, tuple(entry_ids))
        for row in cursor:
            result[row["entry_id"]].append(_row_to_tag(row))
        return result

    def related_entry_ids(self, entry_id: int, limit: int = 3) -> list[int]:
        """
        Entries sharing at least one tag with the given entry.

        Ranked by number of shared tags descending (ties: newest first),
        excluding the entry itself.
        """
        cursor = self._conn.execute("""
            SELECT other.entry_id, COUNT(*) AS shared
            FROM entry_tags mine
            JOIN entry_tags other ON other.tag_id = mine.tag_id
            WHERE mine.entry_id = ? AND other.entry_id != ?
            GROUP BY other.entry_id
            ORDER BY shared DESC, other.entry_id DESC
            LIMIT ?
        """, (entry_id, entry_id, limit))
        return [row["entry_id"] for row in cursor]
