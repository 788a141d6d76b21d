"""
Data types for the knowledge store.

Plain dataclasses returned by the store. Rows are materialized into these
read models; nothing here touches the database.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Where an entry was written; also the keys of a provenance context
PROVENANCE_FIELDS = ("repo", "branch", "commit_sha", "author", "project_type")


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def format_utc_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical stored form."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles both the canonical format (no suffix) and imported formats
    that may include microseconds, 'Z', '+00:00' or a space separator.
    """
    ts = ts.strip().replace("Z", "+00:00")
    if len(ts) > 10 and ts[10] == " ":
        ts = ts[:10] + "T" + ts[11:]
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_timestamp(ts: Optional[str]) -> str:
    """Normalize an external timestamp to canonical form (now if missing)."""
    if not ts:
        return utc_now()
    return format_utc_timestamp(parse_utc_timestamp(str(ts)))


# ---------------------------------------------------------------------------
# Metadata values
# ---------------------------------------------------------------------------

class MetadataType(str, Enum):
    """Declared type of a metadata value, used to reconstitute it on read."""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    JSON = "json"

    @classmethod
    def parse(cls, value: "str | MetadataType | None") -> "MetadataType":
        if value is None or value == "":
            return cls.STRING
        if isinstance(value, MetadataType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown metadata type: {value!r}") from None


_FALSE_STRINGS = frozenset({"", "0", "false", "no", "off"})


def coerce_value(value: str, type: "MetadataType | str") -> Any:
    """Reconstitute a typed value from its stored string form.

    Pure function; the only place stored metadata strings are converted.
    Never raises on a stored value: numbers that do not parse come back as
    the raw string, malformed JSON as None.
    """
    type = MetadataType.parse(type)
    try:
        if type is MetadataType.INTEGER:
            try:
                return int(value)
            except ValueError:
                return int(float(value))
        if type is MetadataType.FLOAT:
            return float(value)
    except (ValueError, OverflowError):
        logger.debug("Metadata value %r is not a valid %s", value, type.value)
        return value
    if type is MetadataType.BOOLEAN:
        return value.strip().lower() not in _FALSE_STRINGS
    if type is MetadataType.JSON:
        try:
            return json.loads(value)
        except ValueError:
            logger.debug("Metadata value %r is not valid JSON", value)
            return None
    return value


def infer_type(value: Any) -> MetadataType:
    """Pick the declared type for a Python value being stored."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return MetadataType.BOOLEAN
    if isinstance(value, int):
        return MetadataType.INTEGER
    if isinstance(value, float):
        return MetadataType.FLOAT
    if isinstance(value, (dict, list)):
        return MetadataType.JSON
    return MetadataType.STRING


def canonical_string(value: Any, type: MetadataType) -> str:
    """Canonical stored string for a value of the given type."""
    if isinstance(value, str):
        return value
    if type is MetadataType.JSON:
        return json.dumps(value, ensure_ascii=False)
    if type is MetadataType.BOOLEAN:
        return "1" if value else "0"
    return str(value)


@dataclass(frozen=True)
class MetadataValue:
    """A tagged metadata value: canonical string plus declared type."""
    raw: str
    type: MetadataType = MetadataType.STRING

    @classmethod
    def of(cls, value: Any, type: "MetadataType | str | None" = None) -> "MetadataValue":
        declared = MetadataType.parse(type) if type is not None else infer_type(value)
        return cls(raw=canonical_string(value, declared), type=declared)

    @property
    def value(self) -> Any:
        return coerce_value(self.raw, self.type)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

RELATIONSHIP_TYPES = {
    "depends_on": "Depends On",
    "relates_to": "Relates To",
    "conflicts_with": "Conflicts With",
    "extends": "Extends",
    "implements": "Implements",
    "references": "References",
    "similar_to": "Similar To",
}


@dataclass
class Tag:
    id: int
    name: str
    usage_count: int = 0
    color: Optional[str] = None
    description: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Metadata:
    entry_id: int
    key: str
    value: str
    type: MetadataType = MetadataType.STRING

    @property
    def typed_value(self) -> Any:
        return coerce_value(self.value, self.type)


@dataclass
class Collection:
    id: int
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_private: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    entry_count: int = 0
    recent_entry_count: int = 0


@dataclass
class Relationship:
    id: int
    from_entry_id: int
    to_entry_id: int
    type: str
    strength: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def type_display(self) -> str:
        return RELATIONSHIP_TYPES.get(self.type, self.type)


@dataclass
class Entry:
    """
    A stored knowledge record.

    ``tags``, ``metadata`` and ``collection`` are filled in when the entry is
    loaded with details. ``tag_related`` and ``semantically_similar`` are
    derived read-only sets populated by ``KnowledgeBase.get_entry``.
    """
    id: int
    content: str
    repo: Optional[str] = None
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    author: Optional[str] = None
    project_type: Optional[str] = None
    collection_id: Optional[int] = None
    embedding: Optional[list[float]] = None
    created_at: str = ""
    updated_at: str = ""
    tags: list[Tag] = field(default_factory=list)
    metadata: list[Metadata] = field(default_factory=list)
    collection: Optional[Collection] = None
    tag_related: list["Entry"] = field(default_factory=list)
    semantically_similar: list["Entry"] = field(default_factory=list)

    @property
    def tag_names(self) -> list[str]:
        return [t.name for t in self.tags]

    @property
    def is_todo(self) -> bool:
        return "todo" in self.tag_names

    def get_metadata_value(self, key: str, default: Any = None) -> Any:
        """Typed metadata value for key, or default when absent."""
        for m in self.metadata:
            if m.key == key:
                return m.typed_value
        return default

    @property
    def priority(self) -> str:
        return self.get_metadata_value("priority", "medium")

    @property
    def status(self) -> str:
        return self.get_metadata_value("status", "open")

    @property
    def git_context(self) -> dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PROVENANCE_FIELDS}

    def to_dict(self, include_related: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "tags": self.tag_names,
            "metadata": {m.key: m.typed_value for m in self.metadata},
            "collection": self.collection.name if self.collection else None,
            "git_context": self.git_context,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_related:
            result["tag_related"] = [e.id for e in self.tag_related]
            result["semantically_similar"] = [e.id for e in self.semantically_similar]
        return result
