"""
Core API for the knowledge store.

KnowledgeBase is the aggregate root:
- add_entry(): provenance + embedding → entry row → tags → metadata
- search_entries(): filters (and optional semantic ranking) → entries
- get_entry(): entry with tags, metadata, collection and related entries
- delete_entry(): explicit cascade over tags, relationships, metadata
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from .collection_store import CollectionStore
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .document_store import ENTRY_COLUMNS, DocumentStore, EntryRow
from .errors import NotFoundError, ValidationError
from .logging_config import configure_ops_log, remove_ops_log
from .metadata import MetadataStore
from .providers.base import (
    EmbeddingProvider,
    ProvenanceProvider,
    SemanticSearchProvider,
    empty_context,
    get_registry,
)
from .query import SearchFilters, build_query, filters_from_dict
from .relationships import RelationshipGraph
from .tags import TagRegistry
from .types import PROVENANCE_FIELDS, Collection, Entry, MetadataType, Relationship, Tag

logger = logging.getLogger(__name__)

EXPORT_VERSION = "2.0"
EXPORT_LIMIT = 1000
TAG_RELATED_LIMIT = 3
SIMILAR_LIMIT = 5
SIMILAR_CANDIDATE_POOL = 200


class KnowledgeBase:
    """
    A knowledge store rooted at a directory.

    Example:
        kb = KnowledgeBase("~/.knowhow")
        entry_id = kb.add_entry("Fix login bug", tags=["bug"],
                                metadata={"priority": "high"})
        for entry in kb.search_entries("login", priority="high"):
            print(entry.id, entry.content)
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        provenance: Optional[ProvenanceProvider] = None,
        embedding: Optional[EmbeddingProvider] = None,
        semantic: Optional[SemanticSearchProvider] = None,
    ):
        """
        Args:
            store_path: Store directory (default: KNOWHOW_STORE_PATH or ~/.knowhow)
            config: Explicit configuration (skips reading knowhow.toml)
            provenance: Provenance provider override
            embedding: Embedding provider override
            semantic: Semantic search provider override
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._provenance = provenance or self._create_provider("provenance")
        self._embedding = embedding or self._create_provider("embedding")
        self._semantic = semantic or self._create_provider("semantic")

        self._document_store = DocumentStore(self._config.database_path)
        self.tags = TagRegistry(self._document_store)
        self.metadata = MetadataStore(self._document_store)
        self.relationships = RelationshipGraph(self._document_store)
        self.collections = CollectionStore(self._document_store)
        self._ops_log_handler = configure_ops_log(self._store_path)

    def _create_provider(self, kind: str):
        """Build the provider of this kind named in the config."""
        provider = getattr(self._config, kind)
        return get_registry().create(kind, provider.name, provider.params)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> DocumentStore:
        """The underlying DocumentStore (shared connection and transactions)."""
        return self._document_store

    # -------------------------------------------------------------------------
    # Collaborators (best effort)
    # -------------------------------------------------------------------------

    def current_context(self) -> dict[str, Optional[str]]:
        """Provenance for a new entry; all None if the provider fails."""
        try:
            context = self._provenance.get_current_context() or {}
        except Exception as e:
            logger.warning("Provenance unavailable: %s", e)
            return empty_context()
        result = empty_context()
        result.update({k: context.get(k) for k in PROVENANCE_FIELDS})
        return result

    def _generate_embedding(self, content: str) -> Optional[list[float]]:
        try:
            return self._embedding.generate_embedding(content)
        except Exception as e:
            logger.warning("Embedding failed, storing entry without one: %s", e)
            return None

    def _suggest_tags(self, content: str) -> list[str]:
        try:
            return list(self._semantic.suggest_tags(content) or [])
        except Exception as e:
            logger.warning("Tag suggestion failed: %s", e)
            return []

    def _semantic_enabled(self) -> bool:
        try:
            return bool(self._semantic.is_enabled())
        except Exception as e:
            logger.warning("Semantic search unavailable: %s", e)
            return False

    # -------------------------------------------------------------------------
    # Entry writes
    # -------------------------------------------------------------------------

    def add_entry(
        self,
        content: str,
        tags: Iterable[str] = (),
        metadata: Optional[dict[str, Any]] = None,
        collection_id: Optional[int] = None,
    ) -> int:
        """
        Add an entry with its tags and metadata, atomically.

        Explicit tags are counted in each tag's usage; auto-suggested tags
        are linked without counting.

        Args:
            content: Entry text (must not be blank)
            tags: Tag names; trimmed, deduplicated, blanks skipped
            metadata: key -> value; the declared type is inferred from the value
            collection_id: Collection to file the entry under

        Returns:
            The new entry id

        Raises:
            ValidationError: blank content
            NotFoundError: collection_id does not exist
        """
        if content is None or not str(content).strip():
            raise ValidationError("Entry content must not be empty")
        if isinstance(tags, str):
            tags = [tags]

        context = self.current_context()
        embedding = self._generate_embedding(content)

        with self._document_store.transaction():
            if collection_id is not None and self.collections.get(collection_id) is None:
                raise NotFoundError(f"Collection not found: {collection_id}")
            entry_id = self._document_store.insert_entry(EntryRow(
                content=content,
                collection_id=collection_id,
                embedding=embedding,
                **context,
            ))
            self.tags.attach(entry_id, tags)
            self.tags.attach(entry_id, self._suggest_tags(content), increment_usage=False)
            for key, value in (metadata or {}).items():
                self.metadata.set_value(entry_id, key, value)

        logger.info("Added entry %d", entry_id)
        return entry_id

    def delete_entry(self, entry_id: int) -> bool:
        """
        Delete an entry and everything hanging off it.

        Cascade, in order: tag links (usage decremented), relationships in
        both directions, metadata rows, the entry itself.

        Returns:
            False if the entry did not exist
        """
        with self._document_store.transaction():
            if not self._document_store.entry_exists(entry_id):
                return False
            self.tags.detach_all(entry_id)
            self.relationships.delete_for_entry(entry_id)
            self.metadata.delete_for_entry(entry_id)
            deleted = self._document_store.delete_entry_row(entry_id)
        logger.info("Deleted entry %d", entry_id)
        return deleted

    def set_metadata_value(
        self,
        entry_id: int,
        key: str,
        value: Any,
        type: "MetadataType | str | None" = None,
    ) -> None:
        """
        Upsert one metadata pair on an entry.

        Raises:
            NotFoundError: the entry does not exist
        """
        with self._document_store.transaction():
            if not self._document_store.entry_exists(entry_id):
                raise NotFoundError(f"Entry not found: {entry_id}")
            self.metadata.set_value(entry_id, key, value, type)
            self._document_store.touch_entry(entry_id)

    def get_metadata_value(self, entry_id: int, key: str, default: Any = None) -> Any:
        """Typed metadata value, or default when the key (or entry) is absent."""
        return self.metadata.get_value(entry_id, key, default)

    def tag_entry(self, entry_id: int, tags: Iterable[str]) -> list[Tag]:
        """
        Attach more explicit tags to an existing entry.

        Returns:
            The newly linked tags
        """
        with self._document_store.transaction():
            if not self._document_store.entry_exists(entry_id):
                raise NotFoundError(f"Entry not found: {entry_id}")
            linked = self.tags.attach(entry_id, [tags] if isinstance(tags, str) else tags)
            if linked:
                self._document_store.touch_entry(entry_id)
        return linked

    # -------------------------------------------------------------------------
    # Entry reads
    # -------------------------------------------------------------------------

    def _with_details(self, entries: list[Entry]) -> list[Entry]:
        """Load tags, metadata and collection for a batch of entries."""
        ids = [e.id for e in entries]
        tags = self.tags.list_for_entries(ids)
        metadata = self.metadata.list_for_entries(ids)
        collection_ids = sorted({e.collection_id for e in entries if e.collection_id is not None})
        collections = self.collections.get_many(collection_ids)
        for entry in entries:
            entry.tags = tags.get(entry.id, [])
            entry.metadata = metadata.get(entry.id, [])
            if entry.collection_id is not None:
                entry.collection = collections.get(entry.collection_id)
        return entries

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        """
        Get an entry with tags, metadata and collection resolved.

        Also fills two derived sets: ``tag_related`` (entries sharing tags,
        most shared first) and ``semantically_similar`` (from the semantic
        provider; empty if it fails).
        """
        entry = self._document_store.get_entry(entry_id)
        if entry is None:
            return None
        self._with_details([entry])

        related_ids = self.tags.related_entry_ids(entry_id, limit=TAG_RELATED_LIMIT)
        entry.tag_related = self._load_in_order(related_ids)
        entry.semantically_similar = self._find_similar(entry)
        return entry

    def _load_in_order(self, ids: list[int]) -> list[Entry]:
        found = self._document_store.get_entries(ids)
        return self._with_details([found[i] for i in ids if i in found])

    def _find_similar(self, entry: Entry) -> list[Entry]:
        try:
            candidates = self._document_store.query_entries(
                f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id != ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (entry.id, SIMILAR_CANDIDATE_POOL),
            )
            ids = self._semantic.find_similar(entry, candidates, SIMILAR_LIMIT)
        except Exception as e:
            logger.warning("Similarity lookup failed for entry %d: %s", entry.id, e)
            return []
        return self._load_in_order([i for i in ids if i != entry.id][:SIMILAR_LIMIT])

    def search_entries(
        self,
        query: str = "",
        filters: Optional[Union[SearchFilters, dict[str, Any]]] = None,
        *,
        now: Optional[datetime] = None,
        **kwargs: Any,
    ) -> list[Entry]:
        """
        Search entries.

        With the semantic provider enabled, a non-empty query resolves to
        the provider's ranked ids and the other filters post-filter them.
        Otherwise the query is a substring match over content and tag names.
        An empty query with no filters returns the most recent entries.

        Args:
            query: Free text (may be empty)
            filters: SearchFilters, or a dict of filter fields
            now: Reference time for the recency filter
            **kwargs: Filter fields, e.g. priority="high", recent=7

        Returns:
            Entries with details loaded, at most filters.limit
        """
        if isinstance(filters, SearchFilters):
            if query or kwargs:
                raise ValueError("Pass either a SearchFilters or query/keyword filters, not both")
            criteria = filters
        else:
            data = dict(filters or {})
            data.update(kwargs)
            if query:
                data["query"] = query
            data.setdefault("limit", self._config.search_limit)
            criteria = filters_from_dict(data)

        ids = None
        if criteria.query and self._semantic_enabled():
            try:
                ids = [int(i) for i in self._semantic.search(criteria.query, criteria.limit)]
            except Exception as e:
                logger.warning("Semantic search failed, using text match: %s", e)
                ids = None

        sql, params = build_query(criteria, now=now or datetime.now(timezone.utc), ids=ids)
        return self._with_details(self._document_store.query_entries(sql, params))

    def has_entries(self) -> bool:
        return self._document_store.count_entries() > 0

    def count(self) -> int:
        return self._document_store.count_entries()

    # -------------------------------------------------------------------------
    # Tags, collections, relationships
    # -------------------------------------------------------------------------

    def popular_tags(self, limit: int = 20) -> list[Tag]:
        return self.tags.popular(limit)

    def create_collection(
        self,
        name: str,
        description: Optional[str] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        *,
        is_private: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Collection:
        return self.collections.create(
            name, description, color, icon, is_private=is_private, metadata=metadata,
        )

    def list_collections(self) -> list[Collection]:
        return self.collections.list_all()

    def relate(
        self,
        from_id: int,
        to_id: int,
        type: str = "relates_to",
        strength: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
        *,
        bidirectional: bool = False,
    ) -> list[Relationship]:
        """Create one edge, or an edge and its mirror."""
        if bidirectional:
            return list(self.relationships.create_bidirectional(
                from_id, to_id, type, strength, metadata))
        with self._document_store.transaction():
            return [self.relationships.create(from_id, to_id, type, strength, metadata)]

    # -------------------------------------------------------------------------
    # Export / re-import
    # -------------------------------------------------------------------------

    def export(self, filters: Optional[dict[str, Any]] = None) -> dict:
        """
        Export entries (up to 1000, newest first) in format version 2.0.

        Args:
            filters: Search filter fields restricting the export
        """
        data = dict(filters or {})
        data["limit"] = EXPORT_LIMIT
        entries = self.search_entries(filters=data)
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            "total_entries": len(entries),
            "entries": [
                {
                    "id": entry.id,
                    "content": entry.content,
                    "tags": entry.tag_names,
                    "metadata": {m.key: m.value for m in entry.metadata},
                    "git_context": entry.git_context,
                    "created_at": entry.created_at,
                    "updated_at": entry.updated_at,
                }
                for entry in entries
            ],
        }

    def import_export(self, data: dict) -> dict:
        """
        Re-add entries from an export dict through add_entry.

        Each entry is added in its own savepoint; a failing entry is
        recorded and skipped.

        Returns:
            {"imported": n, "skipped": n, "errors": [...]}
        """
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise ValidationError("Invalid export data (expected an 'entries' list)")

        results: dict[str, Any] = {"imported": 0, "skipped": 0, "errors": []}
        with self._document_store.transaction():
            for item in data["entries"]:
                try:
                    with self._document_store.transaction():
                        self.add_entry(
                            item["content"],
                            item.get("tags") or [],
                            item.get("metadata") or {},
                        )
                    results["imported"] += 1
                except (KeyError, TypeError, ValueError, NotFoundError) as e:
                    results["errors"].append(f"Failed to import entry: {e}")
                    results["skipped"] += 1
        logger.info("Imported %d entries (%d skipped)", results["imported"], results["skipped"])
        return results

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database and detach the operations log."""
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None
        self._document_store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
