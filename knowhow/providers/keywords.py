"""
Keyword-based stand-ins for semantic features.

No vectors are computed. Tag suggestion is a keyword table lookup and
similarity is word-set Jaccard overlap.
"""

import re
from collections.abc import Iterable
from typing import Optional

from ..types import Entry
from .base import get_registry

# tag -> words that suggest it (substring match on lowercased content)
KEYWORD_TAGS: dict[str, tuple[str, ...]] = {
    "bug": ("bug", "issue", "error"),
    "feature": ("feature", "enhancement", "add"),
    "performance": ("slow", "fast", "optimize", "performance"),
    "security": ("security", "auth", "token", "password"),
    "database": ("database", "sql", "query", "table"),
    "api": ("api", "endpoint", "rest", "graphql"),
}

_WORD_RE = re.compile(r"[a-z]+(?:['-][a-z]+)*")


def suggest_keyword_tags(content: str, table: Optional[dict[str, tuple[str, ...]]] = None) -> list[str]:
    """Tags whose keywords occur in the content, in table order."""
    lowered = content.lower()
    return [
        tag for tag, words in (table or KEYWORD_TAGS).items()
        if any(word in lowered for word in words)
    ]


def jaccard_similarity(text1: str, text2: str) -> float:
    """Word-set Jaccard similarity in [0, 1]."""
    words1 = set(_WORD_RE.findall(text1.lower()))
    words2 = set(_WORD_RE.findall(text2.lower()))
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


class KeywordSemanticSearch:
    """
    Semantic provider without a vector index.

    Ranked search is reported as disabled, so queries fall back to
    substring matching.
    """

    def __init__(self, keywords: Optional[dict[str, list[str]]] = None, min_similarity: float = 0.1):
        self._table = (
            {tag: tuple(words) for tag, words in keywords.items()}
            if keywords else dict(KEYWORD_TAGS)
        )
        self._min_similarity = min_similarity

    def is_enabled(self) -> bool:
        return False

    def search(self, query: str, limit: int = 10) -> list[int]:
        return []

    def suggest_tags(self, text: str) -> list[str]:
        return suggest_keyword_tags(text, self._table)

    def find_similar(
        self,
        entry: Entry,
        candidates: Iterable[Entry],
        limit: int = 5,
    ) -> list[int]:
        scored = []
        for other in candidates:
            if other.id == entry.id:
                continue
            score = jaccard_similarity(entry.content, other.content)
            if score >= self._min_similarity:
                scored.append((score, other.id))
        scored.sort(key=lambda pair: (-pair[0], -pair[1]))
        return [entry_id for _, entry_id in scored[:limit]]


class NoEmbedding:
    """Embedding provider that never produces a vector."""

    def generate_embedding(self, text: str) -> Optional[list[float]]:
        return None


# Register providers
_registry = get_registry()
_registry.register("semantic", "keywords", KeywordSemanticSearch)
_registry.register("embedding", "none", NoEmbedding)
