"""
knowhow

A developer knowledge store: entries with tags, typed metadata,
collections and relationships, plus a transactional reconciler for
migrating legacy data and importing backups.

Quick Start:
    from knowhow import KnowledgeBase

    kb = KnowledgeBase()  # uses ~/.knowhow/
    entry_id = kb.add_entry("Fix login bug", tags=["bug"],
                            metadata={"priority": "high"})
    results = kb.search_entries("login", recent=7)

CLI Usage:
    knowhow add "Fix login bug" -t bug
    knowhow search login --priority high
    knowhow data migrate --backup legacy.json

Environment Variables:
    KNOWHOW_STORE_PATH  - Override default store location
    KNOWHOW_VERBOSE     - Set to 1 for debug logging in the CLI
"""

from .api import KnowledgeBase
from .errors import KnowledgeError, NotFoundError, ValidationError
from .query import SearchFilters
from .reconciler import Outcome, ReconcileResult, Reconciler
from .types import Collection, Entry, Metadata, MetadataType, MetadataValue, Relationship, Tag

__version__ = "0.1.0"
__all__ = [
    "KnowledgeBase",
    "SearchFilters",
    "Reconciler",
    "ReconcileResult",
    "Outcome",
    "Entry",
    "Tag",
    "Metadata",
    "MetadataType",
    "MetadataValue",
    "Collection",
    "Relationship",
    "KnowledgeError",
    "ValidationError",
    "NotFoundError",
]
