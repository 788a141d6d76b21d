"""
Entry store using SQLite.

Owns the single SQLite connection shared by the tag registry, metadata
store, relationship graph and collection store. Responsible for:
- Schema creation and versioned migration (PRAGMA user_version)
- Transactions (nestable: inner blocks become savepoints)
- Entry rows (insert / read / delete)

Foreign keys are enforced but no table declares ON DELETE CASCADE;
cascades are explicit statements issued by the caller.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from .types import Entry, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

ENTRY_COLUMNS = (
    "id, content, repo, branch, commit_sha, author, project_type, "
    "collection_id, embedding_json, created_at, updated_at"
)


@dataclass
class EntryRow:
    """Fields accepted when inserting an entry."""
    content: str
    repo: Optional[str] = None
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    author: Optional[str] = None
    project_type: Optional[str] = None
    collection_id: Optional[int] = None
    embedding: Optional[list[float]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _row_to_entry(row: sqlite3.Row) -> Entry:
    embedding = None
    if row["embedding_json"]:
        try:
            embedding = json.loads(row["embedding_json"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Entry %d has unreadable embedding, ignoring", row["id"])
    return Entry(
        id=row["id"],
        content=row["content"],
        repo=row["repo"],
        branch=row["branch"],
        commit_sha=row["commit_sha"],
        author=row["author"],
        project_type=row["project_type"],
        collection_id=row["collection_id"],
        embedding=embedding,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DocumentStore:
    """
    SQLite-backed store for knowledge entries and their associations.

    The connection runs in autocommit mode (isolation_level=None); every
    multi-statement mutation goes through :meth:`transaction`.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._depth = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._migrate()

    def _migrate(self) -> None:
        """Bring the schema up to SCHEMA_VERSION."""
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version == SCHEMA_VERSION:
            return
        if version > SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema version {version} is newer than supported "
                f"({SCHEMA_VERSION}): {self._db_path}"
            )

        with self.transaction():
            if version < 1:
                self._create_v1_schema()
            if version < 2:
                # v2: embeddings stored with the entry, auto-suggested flag
                # on tag links, repo index for relevance ordering
                columns = {r[1] for r in self._conn.execute("PRAGMA table_info(entries)")}
                if "embedding_json" not in columns:
                    self._conn.execute("ALTER TABLE entries ADD COLUMN embedding_json TEXT")
                link_columns = {r[1] for r in self._conn.execute("PRAGMA table_info(entry_tags)")}
                if "auto" not in link_columns:
                    self._conn.execute(
                        "ALTER TABLE entry_tags ADD COLUMN auto INTEGER NOT NULL DEFAULT 0"
                    )
                self._conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_entries_repo ON entries(repo)
                """)
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        if version:
            logger.info("Migrated schema v%d -> v%d: %s", version, SCHEMA_VERSION, self._db_path)

    def _create_v1_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                color TEXT,
                icon TEXT,
                is_private INTEGER NOT NULL DEFAULT 0,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                repo TEXT,
                branch TEXT,
                commit_sha TEXT,
                author TEXT,
                project_type TEXT,
                collection_id INTEGER REFERENCES collections(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_created ON entries(created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_collection ON entries(collection_id)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                usage_count INTEGER NOT NULL DEFAULT 0,
                color TEXT,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entry_tags (
                entry_id INTEGER NOT NULL REFERENCES entries(id),
                tag_id INTEGER NOT NULL REFERENCES tags(id),
                created_at TEXT NOT NULL,
                PRIMARY KEY (entry_id, tag_id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entry_tags_tag ON entry_tags(tag_id)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                entry_id INTEGER NOT NULL REFERENCES entries(id),
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'string',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (entry_id, key)
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS relationships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_entry_id INTEGER NOT NULL REFERENCES entries(id),
                to_entry_id INTEGER NOT NULL REFERENCES entries(id),
                type TEXT NOT NULL,
                strength REAL NOT NULL DEFAULT 1.0,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships(from_entry_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships(to_entry_id)
        """)

    # -------------------------------------------------------------------------
    # Connection / Transactions
    # -------------------------------------------------------------------------

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("DocumentStore is closed")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        The outermost block is a real transaction; nested blocks are
        savepoints, so an inner failure can be rolled back and handled
        without abandoning the outer transaction.
        """
        conn = self.connection
        depth = self._depth
        savepoint = f"sp_{depth}"
        if depth == 0:
            conn.execute("BEGIN")
        else:
            conn.execute(f"SAVEPOINT {savepoint}")
        self._depth += 1
        try:
            yield conn
        except BaseException:
            self._depth -= 1
            if depth == 0:
                conn.execute("ROLLBACK")
            else:
                conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        else:
            self._depth -= 1
            if depth == 0:
                conn.execute("COMMIT")
            else:
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    def table_exists(self, name: str) -> bool:
        """Check whether a table exists in this database."""
        row = self.connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        ).fetchone()
        return row is not None

    # -------------------------------------------------------------------------
    # Entry Writes
    # -------------------------------------------------------------------------

    def insert_entry(self, row: EntryRow) -> int:
        """
        Insert an entry row.

        Timestamps default to now; supplied timestamps are stored as given
        (callers normalize them).

        Returns:
            The new entry id
        """
        now = utc_now()
        created_at = row.created_at or now
        updated_at = row.updated_at or created_at
        embedding_json = json.dumps(row.embedding) if row.embedding is not None else None
        cursor = self.connection.execute("""
            INSERT INTO entries
            (content, repo, branch, commit_sha, author, project_type,
             collection_id, embedding_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            row.content, row.repo, row.branch, row.commit_sha, row.author,
            row.project_type, row.collection_id, embedding_json,
            created_at, updated_at,
        ))
        return cursor.lastrowid

    def touch_entry(self, entry_id: int) -> None:
        """Bump updated_at on an entry."""
        self.connection.execute(
            "UPDATE entries SET updated_at = ? WHERE id = ?",
            (utc_now(), entry_id),
        )

    def delete_entry_row(self, entry_id: int) -> bool:
        """
        Delete the entry row only.

        Callers remove metadata, tag links and relationships first.

        Returns:
            True if the row existed
        """
        cursor = self.connection.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Entry Reads
    # -------------------------------------------------------------------------

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        """Get an entry row by id (no associations loaded)."""
        row = self.connection.execute(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = ?",
            (entry_id,),
        ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_entries(self, ids: list[int]) -> dict[int, Entry]:
        """
        Get multiple entries by id.

        Returns:
            Dict mapping id -> Entry (missing ids omitted)
        """
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        cursor = self.connection.execute(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id IN ({placeholders})",
            tuple(ids),
        )
        return {row["id"]: _row_to_entry(row) for row in cursor}

    def query_entries(self, sql: str, params: tuple = ()) -> list[Entry]:
        """Run a SELECT over entries and materialize the rows in order."""
        return [_row_to_entry(row) for row in self.connection.execute(sql, params)]

    def entry_exists(self, entry_id: int) -> bool:
        row = self.connection.execute(
            "SELECT 1 FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return row is not None

    def count_entries(self) -> int:
        """Count all entries."""
        return self.connection.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()


def json_or_empty(value: Any) -> str:
    """Serialize a free-form dict column."""
    return json.dumps(value or {}, ensure_ascii=False)


def parse_json_dict(text: Optional[str]) -> dict:
    """Parse a free-form dict column, tolerating bad data."""
    if not text:
        return {}
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}
