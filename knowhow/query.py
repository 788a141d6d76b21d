"""
Query/filter engine.

A search is a SearchFilters value. Each filter is an independent
predicate builder producing a SQL clause; build_query() folds the
clauses of every active filter with AND and appends the ordering.

    sql, params = build_query(SearchFilters(query="auth", priority="high"))
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from .config import DEFAULT_SEARCH_LIMIT
from .document_store import ENTRY_COLUMNS
from .errors import ValidationError
from .types import format_utc_timestamp

Clause = tuple[str, list]


@dataclass
class SearchFilters:
    """
    Filters for a search. Every field is optional; active filters
    combine with AND.

    Attributes:
        query: Substring matched against content OR any tag name
        collection: Collection id
        repo: Repository substring
        branch: Exact branch
        author: Author substring
        project_type: Exact project type
        tags: Every listed name must match some tag (substring)
        todo: Only entries tagged exactly "todo"
        priority: Exact metadata priority
        status: Exact metadata status
        recent: Only entries created within this many days
        context_repo: Entries from this repo sort first
        limit: Maximum results
    """
    query: str = ""
    collection: Optional[int] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    author: Optional[str] = None
    project_type: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    todo: bool = False
    priority: Optional[str] = None
    status: Optional[str] = None
    recent: Optional[int] = None
    context_repo: Optional[str] = None
    limit: int = DEFAULT_SEARCH_LIMIT

    def __post_init__(self):
        if isinstance(self.tags, str):
            self.tags = [t.strip() for t in self.tags.split(",") if t.strip()]
        else:
            self.tags = [t.strip() for t in self.tags if t and t.strip()]
        self.query = (self.query or "").strip()
        if self.limit is None or int(self.limit) < 1:
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")
        self.limit = int(self.limit)
        if self.recent is not None and int(self.recent) < 0:
            raise ValidationError(f"recent must not be negative, got {self.recent!r}")


def _like(text: str) -> str:
    """LIKE pattern matching text anywhere, with wildcards escaped."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _has_tag_like(pattern: str) -> Clause:
    return (
        "EXISTS (SELECT 1 FROM entry_tags et JOIN tags t ON t.id = et.tag_id "
        "WHERE et.entry_id = e.id AND t.name LIKE ? ESCAPE '\\')",
        [pattern],
    )


def _has_metadata(key: str, value: str) -> Clause:
    return (
        "EXISTS (SELECT 1 FROM metadata m "
        "WHERE m.entry_id = e.id AND m.key = ? AND m.value = ?)",
        [key, value],
    )


# -----------------------------------------------------------------------------
# Predicate builders: (filters, now) -> clause or None when inactive
# -----------------------------------------------------------------------------

def text_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.query:
        return None
    pattern = _like(f.query)
    tag_sql, tag_params = _has_tag_like(pattern)
    return f"(e.content LIKE ? ESCAPE '\\' OR {tag_sql})", [pattern, *tag_params]


def collection_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if f.collection is None:
        return None
    return "e.collection_id = ?", [int(f.collection)]


def repo_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.repo:
        return None
    return "e.repo LIKE ? ESCAPE '\\'", [_like(f.repo)]


def branch_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.branch:
        return None
    return "e.branch = ?", [f.branch]


def author_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.author:
        return None
    return "e.author LIKE ? ESCAPE '\\'", [_like(f.author)]


def project_type_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.project_type:
        return None
    return "e.project_type = ?", [f.project_type]


def tags_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.tags:
        return None
    clauses = [_has_tag_like(_like(tag)) for tag in f.tags]
    return (
        " AND ".join(sql for sql, _ in clauses),
        [p for _, params in clauses for p in params],
    )


def todo_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.todo:
        return None
    return (
        "EXISTS (SELECT 1 FROM entry_tags et JOIN tags t ON t.id = et.tag_id "
        "WHERE et.entry_id = e.id AND t.name = 'todo')",
        [],
    )


def priority_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.priority:
        return None
    return _has_metadata("priority", f.priority)


def status_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.status:
        return None
    return _has_metadata("status", f.status)


def recent_predicate(f: SearchFilters, now: datetime) -> Optional[Clause]:
    if not f.recent:
        return None
    cutoff = format_utc_timestamp(now - timedelta(days=int(f.recent)))
    return "e.created_at >= ?", [cutoff]


Predicate = Callable[[SearchFilters, datetime], Optional[Clause]]

PREDICATES: list[Predicate] = [
    text_predicate,
    collection_predicate,
    repo_predicate,
    branch_predicate,
    author_predicate,
    project_type_predicate,
    tags_predicate,
    todo_predicate,
    priority_predicate,
    status_predicate,
    recent_predicate,
]


def build_where(
    filters: SearchFilters,
    *,
    now: Optional[datetime] = None,
    ids: Optional[list[int]] = None,
    include_text: bool = True,
) -> Clause:
    """
    Fold every active predicate with AND.

    Args:
        filters: The search filters
        now: Reference time for recency (default: current UTC time)
        ids: Restrict to these entry ids (semantic search results)
        include_text: False when the text query was already resolved
            into ``ids`` by a semantic provider

    Returns:
        (where_sql, params); where_sql is "1" when nothing is active
    """
    now = now or datetime.now(timezone.utc)
    parts: list[str] = []
    params: list = []
    if ids is not None:
        if not ids:
            return "0", []
        parts.append(f"e.id IN ({','.join('?' * len(ids))})")
        params.extend(ids)
    for predicate in PREDICATES:
        if predicate is text_predicate and not include_text:
            continue
        clause = predicate(filters, now)
        if clause is None:
            continue
        sql, clause_params = clause
        parts.append(f"({sql})")
        params.extend(clause_params)
    return (" AND ".join(parts) if parts else "1"), params


def build_order(filters: SearchFilters, ids: Optional[list[int]] = None) -> Clause:
    """
    Ordering: context repo first (when given), then the semantic rank
    (when ids are given), then newest first.
    """
    parts: list[str] = []
    params: list = []
    if filters.context_repo:
        parts.append("CASE WHEN e.repo = ? THEN 0 ELSE 1 END")
        params.append(filters.context_repo)
    if ids:
        whens = " ".join("WHEN ? THEN ?" for _ in ids)
        parts.append(f"CASE e.id {whens} END")
        for rank, entry_id in enumerate(ids):
            params.extend([entry_id, rank])
    parts.extend(["e.created_at DESC", "e.id DESC"])
    return ", ".join(parts), params


def build_query(
    filters: SearchFilters,
    *,
    now: Optional[datetime] = None,
    ids: Optional[list[int]] = None,
) -> tuple[str, tuple]:
    """
    Build the full SELECT for a search.

    When ``ids`` is given the text query is considered resolved by the
    semantic provider and the remaining filters post-filter that id set.

    Returns:
        (sql, params) ready for DocumentStore.query_entries
    """
    where, where_params = build_where(
        filters, now=now, ids=ids, include_text=ids is None,
    )
    order, order_params = build_order(filters, ids)
    columns = ", ".join(f"e.{c.strip()}" for c in ENTRY_COLUMNS.split(","))
    sql = (
        f"SELECT {columns} FROM entries e "
        f"WHERE {where} ORDER BY {order} LIMIT ?"
    )
    return sql, (*where_params, *order_params, filters.limit)


def filters_from_dict(data: dict[str, Union[str, int, bool, list, None]]) -> SearchFilters:
    """Build SearchFilters from a loose dict, ignoring unknown and empty keys."""
    known = set(SearchFilters.__dataclass_fields__)
    # "type" is accepted as an alias for project_type
    data = dict(data)
    if "type" in data and "project_type" not in data:
        data["project_type"] = data.pop("type")
    kwargs = {k: v for k, v in data.items() if k in known and v not in (None, "", [])}
    return SearchFilters(**kwargs)
