"""
Shared pytest fixtures for knowhow tests.

Provides mock collaborators so tests never shell out to git and never
depend on a real semantic search backend. Storage is always real SQLite.
"""

import hashlib
from typing import Optional

import pytest

from knowhow.api import KnowledgeBase
from knowhow.config import ProviderConfig, StoreConfig
from knowhow.providers.keywords import suggest_keyword_tags


class FixedProvenance:
    """Provenance provider returning a fixed context."""

    def __init__(self, **context):
        self.context = {
            "repo": "acme/app",
            "branch": "main",
            "commit_sha": "abc1234",
            "author": "sam",
            "project_type": "python",
        }
        self.context.update(context)
        self.calls = 0

    def get_current_context(self) -> dict[str, Optional[str]]:
        self.calls += 1
        return dict(self.context)


class FailingProvenance:
    def get_current_context(self):
        raise RuntimeError("git exploded")


class MockEmbeddingProvider:
    """Deterministic embedding from the content hash; no model loading."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def generate_embedding(self, text: str) -> Optional[list[float]]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding backend down")
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i + 2], 16) / 255.0 for i in range(0, 16, 2)]


class MockSemanticSearch:
    """
    Scriptable semantic search provider.

    ``ranked`` is returned verbatim from search(); tag suggestions come
    from the keyword table unless ``suggestions`` is given.
    """

    def __init__(self, enabled: bool = False, ranked: Optional[list[int]] = None,
                 suggestions: Optional[list[str]] = None, similar: Optional[list[int]] = None,
                 fail: bool = False):
        self.enabled = enabled
        self.ranked = ranked or []
        self.suggestions = suggestions
        self.similar = similar or []
        self.fail = fail
        self.search_calls: list[tuple[str, int]] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def search(self, query: str, limit: int = 10) -> list[int]:
        self.search_calls.append((query, limit))
        if self.fail:
            raise RuntimeError("search backend down")
        return list(self.ranked)

    def suggest_tags(self, text: str) -> list[str]:
        if self.fail:
            raise RuntimeError("suggestion backend down")
        if self.suggestions is not None:
            return list(self.suggestions)
        return suggest_keyword_tags(text)

    def find_similar(self, entry, candidates, limit: int = 5) -> list[int]:
        if self.fail:
            raise RuntimeError("similarity backend down")
        return list(self.similar)[:limit]


def make_kb(path, *, provenance=None, embedding=None, semantic=None) -> KnowledgeBase:
    """A KnowledgeBase on a fresh directory with mock collaborators."""
    config = StoreConfig(
        path=path,
        provenance=ProviderConfig("none"),
        embedding=ProviderConfig("none"),
        semantic=ProviderConfig("keywords"),
    )
    return KnowledgeBase(
        path,
        config=config,
        provenance=provenance or FixedProvenance(),
        embedding=embedding or MockEmbeddingProvider(),
        semantic=semantic or MockSemanticSearch(),
    )


@pytest.fixture
def semantic():
    return MockSemanticSearch()


@pytest.fixture
def kb(tmp_path, semantic):
    """A real KnowledgeBase on SQLite with mock collaborators."""
    store = make_kb(tmp_path / "store", semantic=semantic)
    yield store
    store.close()


@pytest.fixture
def fresh_kb(tmp_path):
    """A second, empty KnowledgeBase for import testing."""
    store = make_kb(tmp_path / "fresh")
    yield store
    store.close()
