"""
Reconciler: bulk-merge a legacy table set or a JSON backup into the store.

Both triggers materialize their source as a dataset shaped like a backup
file ({entries, tags, entry_tags, metadata}) and run the same merge:

    one transaction
      landing collection
      per record (savepoint): entry → tags (find-or-create + sync) → metadata
      tag usage overwritten from the source counts
    commit

A failing record rolls back only its own savepoint and is reported as
"Entry <id>: <message>"; the run continues with the next record.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .api import KnowledgeBase
from .document_store import EntryRow
from .errors import BackupError, PreconditionError, ValidationError
from .types import (
    PROVENANCE_FIELDS,
    MetadataType,
    MetadataValue,
    normalize_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

REQUIRED_LEGACY_TABLES = (
    "knowledge_entries",
    "knowledge_tags",
    "knowledge_entry_tags",
)

# Drop order respects references between the legacy tables
LEGACY_DROP_ORDER = (
    "knowledge_relationships",
    "knowledge_metadata",
    "knowledge_entry_tags",
    "knowledge_entries",
    "knowledge_tags",
)

LANDING_COLOR = "#64748B"
LANDING_ICON = "📦"
MIGRATED_COLLECTION = ("Migrated from Legacy",
                       "Knowledge entries migrated from the legacy tables")
IMPORTED_COLLECTION = ("Imported from Backup",
                       "Knowledge entries imported from backup file")


class _NothingMerged(Exception):
    """Every record failed; the run is rolled back."""


def _replay_type(name: Any) -> MetadataType:
    """Declared type of a source metadata row; unknown names read as strings."""
    try:
        return MetadataType.parse(name)
    except ValueError:
        logger.warning("Unknown metadata type %r replayed as string", name)
        return MetadataType.STRING


def _source_usage(value: Any) -> int:
    """Usage count from a source tag row; missing means zero."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid usage_count {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid usage_count {value!r}") from None


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    NO_DATA = "no_data"
    ERROR = "error"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""
    entries_migrated: int = 0
    tags_migrated: int = 0
    collections_created: int = 0
    errors: list[str] = field(default_factory=list)
    outcome: Outcome = Outcome.SUCCESS
    message: Optional[str] = None
    collection_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.NO_DATA)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "entries_migrated": self.entries_migrated,
            "tags_migrated": self.tags_migrated,
            "collections_created": self.collections_created,
            "errors": list(self.errors),
            "status": self.outcome.value,
        }
        if self.message:
            result["message"] = self.message
        if self.collection_id is not None:
            result["collection_id"] = self.collection_id
        return result


class Reconciler:
    """
    Batch merges into a KnowledgeBase.

    Args:
        kb: Target knowledge base
        legacy_path: SQLite file holding the legacy tables. Defaults to
            the knowledge base's configured legacy path, then to the
            store database itself.
    """

    def __init__(self, kb: KnowledgeBase, legacy_path: Optional[Union[str, Path]] = None):
        self._kb = kb
        if legacy_path is None:
            legacy_path = kb.config.legacy_path
        self._legacy_path = Path(legacy_path).expanduser() if legacy_path else None

    # -------------------------------------------------------------------------
    # Legacy source
    # -------------------------------------------------------------------------

    @contextmanager
    def _legacy_connection(self) -> Iterator[Optional[sqlite3.Connection]]:
        """
        Connection to the database holding the legacy tables.

        Yields None when a separate legacy file is configured but absent.
        """
        if self._legacy_path is None:
            yield self._kb.store.connection
            return
        if not self._legacy_path.exists():
            yield None
            return
        conn = sqlite3.connect(str(self._legacy_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _has_table(conn: sqlite3.Connection, name: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def legacy_tables_exist(self) -> bool:
        """True if every required legacy table is present."""
        with self._legacy_connection() as conn:
            if conn is None:
                return False
            return all(self._has_table(conn, t) for t in REQUIRED_LEGACY_TABLES)

    def _read_legacy(self) -> dict[str, list[dict]]:
        """
        Read the legacy tables in full.

        Raises:
            PreconditionError: a required table is missing
        """
        with self._legacy_connection() as conn:
            if conn is None or not all(self._has_table(conn, t) for t in REQUIRED_LEGACY_TABLES):
                raise PreconditionError("No legacy knowledge data found to migrate.")

            def rows(table: str) -> list[dict]:
                if not self._has_table(conn, table):
                    return []
                return [dict(r) for r in conn.execute(f"SELECT * FROM {table}")]

            return {
                "entries": rows("knowledge_entries"),
                "tags": rows("knowledge_tags"),
                "entry_tags": rows("knowledge_entry_tags"),
                "metadata": rows("knowledge_metadata"),
            }

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def migrate_from_legacy(self) -> ReconcileResult:
        """
        Merge the legacy table set into the store.

        Returns NO_DATA (not an error) when the legacy tables are absent,
        so re-running on a fresh install is a harmless no-op.
        """
        try:
            dataset = self._read_legacy()
        except PreconditionError as e:
            logger.info("Reconcile migrate: %s", e)
            return ReconcileResult(outcome=Outcome.NO_DATA, message=str(e))
        return self._merge(dataset, *MIGRATED_COLLECTION, source="legacy tables")

    def import_from_backup(self, path: Union[str, Path]) -> ReconcileResult:
        """
        Merge a backup (or export) JSON file into the store.

        Returns ERROR before touching storage when the file is missing,
        unreadable, or lacks an ``entries`` list.
        """
        try:
            dataset = self._read_backup(Path(path))
        except PreconditionError as e:
            logger.warning("Reconcile import: %s", e)
            return ReconcileResult(outcome=Outcome.ERROR, errors=[str(e)])
        return self._merge(dataset, *IMPORTED_COLLECTION, source=str(path))

    @staticmethod
    def _read_backup(path: Path) -> dict[str, list[dict]]:
        if not path.exists():
            raise PreconditionError(f"Backup file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PreconditionError(f"Invalid backup file format: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise PreconditionError("Invalid backup file format: missing 'entries' list")
        return {
            "entries": data["entries"],
            "tags": data.get("tags") or [],
            "entry_tags": data.get("entry_tags") or [],
            "metadata": data.get("metadata") or [],
        }

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def _merge(
        self,
        dataset: dict[str, list[dict]],
        collection_name: str,
        collection_description: str,
        *,
        source: str,
    ) -> ReconcileResult:
        result = ReconcileResult()
        tags_by_id = {t.get("id"): t for t in dataset["tags"] if isinstance(t, dict)}
        tag_names_by_entry: dict[Any, list[str]] = {}
        for link in dataset["entry_tags"]:
            tag = tags_by_id.get(link.get("tag_id")) if isinstance(link, dict) else None
            if tag is not None and tag.get("name"):
                tag_names_by_entry.setdefault(link.get("entry_id"), []).append(tag["name"])
        metadata_by_entry: dict[Any, list[dict]] = {}
        for meta in dataset["metadata"]:
            if isinstance(meta, dict):
                metadata_by_entry.setdefault(meta.get("entry_id"), []).append(meta)

        store = self._kb.store
        logger.info("Reconcile from %s: %d records", source, len(dataset["entries"]))
        try:
            with store.transaction():
                collection = self._kb.collections.create(
                    collection_name, collection_description,
                    LANDING_COLOR, LANDING_ICON,
                )
                result.collections_created += 1
                result.collection_id = collection.id

                for record in dataset["entries"]:
                    record_id = record.get("id", "?") if isinstance(record, dict) else "?"
                    try:
                        with store.transaction():
                            self._merge_record(
                                record, collection.id,
                                tag_names_by_entry.get(record_id, []),
                                metadata_by_entry.get(record_id, []),
                            )
                        result.entries_migrated += 1
                    except Exception as e:
                        logger.warning("Reconcile skipped entry %s: %s", record_id, e)
                        result.errors.append(f"Entry {record_id}: {e}")

                for tag in dataset["tags"]:
                    if not isinstance(tag, dict) or not tag.get("name"):
                        continue
                    existing = self._kb.tags.get_by_name(tag["name"])
                    if existing is None:
                        continue
                    try:
                        usage = _source_usage(tag.get("usage_count"))
                    except ValueError as e:
                        logger.warning("Reconcile kept usage of tag %r: %s", tag["name"], e)
                        result.errors.append(f"Tag {tag['name']}: {e}")
                        continue
                    self._kb.tags.set_usage(existing.id, usage)
                    result.tags_migrated += 1

                # An ERROR run commits nothing, not even the landing collection
                if dataset["entries"] and not result.entries_migrated:
                    raise _NothingMerged()
        except _NothingMerged:
            logger.warning("Reconcile from %s: every record failed, rolled back", source)
            return ReconcileResult(outcome=Outcome.ERROR, errors=result.errors)
        except (sqlite3.Error, ValidationError) as e:
            logger.error("Reconcile from %s failed: %s", source, e)
            return ReconcileResult(outcome=Outcome.ERROR, errors=[*result.errors, str(e)])

        result.outcome = Outcome.PARTIAL_SUCCESS if result.errors else Outcome.SUCCESS
        logger.info(
            "Reconcile from %s: %d entries, %d tags, %d errors (%s)",
            source, result.entries_migrated, result.tags_migrated,
            len(result.errors), result.outcome.value,
        )
        return result

    def _merge_record(
        self,
        record: dict,
        collection_id: int,
        tag_names: list[str],
        metadata: list[dict],
    ) -> None:
        """
        Recreate one source record as an entry.

        Accepts both legacy/backup rows (flat provenance, tags and
        metadata in side tables) and export 2.0 rows (``git_context``,
        inline ``tags`` list and ``metadata`` dict).
        """
        if not isinstance(record, dict):
            raise ValidationError("record is not an object")
        content = record.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("missing required field 'content'")

        context = record.get("git_context") or {}
        if not isinstance(context, dict):
            raise ValidationError("'git_context' is not an object")
        provenance = {k: record.get(k, context.get(k)) for k in PROVENANCE_FIELDS}
        created_at = normalize_timestamp(record.get("created_at"))
        updated_at = (normalize_timestamp(record["updated_at"])
                      if record.get("updated_at") else created_at)

        store = self._kb.store
        entry_id = store.insert_entry(EntryRow(
            content=content,
            collection_id=collection_id,
            created_at=created_at,
            updated_at=updated_at,
            **provenance,
        ))

        names = list(tag_names)
        inline_tags = record.get("tags")
        if isinstance(inline_tags, list):
            names.extend(t for t in inline_tags if isinstance(t, str))
        if names:
            self._kb.tags.sync(entry_id, names)

        for meta in metadata:
            if meta.get("key") is None or meta.get("value") is None:
                raise ValidationError("metadata row without key or value")
            self._kb.metadata.set(entry_id, str(meta["key"]), MetadataValue(
                raw=str(meta["value"]),
                type=_replay_type(meta.get("type")),
            ))
        inline_metadata = record.get("metadata")
        if isinstance(inline_metadata, dict):
            for key, value in inline_metadata.items():
                self._kb.metadata.set_value(entry_id, key, value)

    # -------------------------------------------------------------------------
    # Backup / removal
    # -------------------------------------------------------------------------

    def backup_legacy_data(self, path: Union[str, Path]) -> bool:
        """
        Snapshot every legacy table to one JSON file.

        Returns:
            False when the legacy tables are missing or the write fails
        """
        try:
            self._write_backup(Path(path))
        except PreconditionError as e:
            logger.info("Legacy backup skipped: %s", e)
            return False
        except BackupError as e:
            logger.warning("Legacy backup failed: %s", e)
            return False
        logger.info("Backed up legacy data to %s", path)
        return True

    def _write_backup(self, path: Path) -> None:
        data: dict[str, Any] = {"backup_created_at": utc_now()}
        try:
            data.update(self._read_legacy())
        except sqlite3.Error as e:
            raise BackupError(f"Cannot read legacy tables: {e}") from e
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            raise BackupError(f"Cannot write backup {path}: {e}") from e

    def remove_legacy_system(self) -> dict[str, list[str]]:
        """
        Drop the legacy tables in dependency order, in one transaction.

        Missing tables are skipped.

        Returns:
            {"tables_removed": [...], "errors": [...]}
        """
        results: dict[str, list[str]] = {"tables_removed": [], "errors": []}
        with self._legacy_connection() as conn:
            if conn is None:
                return results
            removed: list[str] = []
            try:
                if self._legacy_path is None:
                    with self._kb.store.transaction():
                        removed = self._drop_legacy_tables(conn)
                else:
                    conn.execute("BEGIN")
                    try:
                        removed = self._drop_legacy_tables(conn)
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                    conn.execute("COMMIT")
            except sqlite3.Error as e:
                logger.error("Removing legacy tables failed: %s", e)
                results["errors"].append(str(e))
                return results
            results["tables_removed"] = removed
        if results["tables_removed"]:
            logger.info("Removed legacy tables: %s", ", ".join(results["tables_removed"]))
        return results

    def _drop_legacy_tables(self, conn: sqlite3.Connection) -> list[str]:
        removed = []
        for table in LEGACY_DROP_ORDER:
            if self._has_table(conn, table):
                conn.execute(f"DROP TABLE {table}")
                removed.append(table)
        return removed
