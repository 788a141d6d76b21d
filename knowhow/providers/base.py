"""
Collaborator protocols and the provider registry.

Providers satisfy these protocols structurally; nothing needs to inherit.
Every collaborator is best effort: the store catches and logs their
failures and carries on without the feature.
"""

from collections.abc import Iterable
from typing import Optional, Protocol, runtime_checkable

from ..types import PROVENANCE_FIELDS, Entry


def empty_context() -> dict[str, Optional[str]]:
    """A provenance context with every field absent."""
    return {key: None for key in PROVENANCE_FIELDS}


# -----------------------------------------------------------------------------
# Provenance
# -----------------------------------------------------------------------------

@runtime_checkable
class ProvenanceProvider(Protocol):
    """
    Supplies the version-control context an entry is recorded in.

    Example implementation:
        class FixedProvenance:
            def get_current_context(self) -> dict[str, str | None]:
                return {"repo": "acme/app", "branch": "main", "commit_sha": None,
                        "author": "sam", "project_type": "python"}
    """

    def get_current_context(self) -> dict[str, Optional[str]]:
        """
        Return repo, branch, commit_sha, author and project_type.

        Any value may be None. Must not raise for an ordinary
        "not in a repository" situation.
        """
        ...


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates a vector for entry content.

    The vector is stored opaquely with the entry; the store never does
    arithmetic on it.
    """

    def generate_embedding(self, text: str) -> Optional[list[float]]:
        """
        Args:
            text: Entry content

        Returns:
            A list of floats, or None when no embedding is available
        """
        ...


# -----------------------------------------------------------------------------
# Semantic Search
# -----------------------------------------------------------------------------

@runtime_checkable
class SemanticSearchProvider(Protocol):
    """
    Ranked retrieval and tag suggestion.

    When is_enabled() is False the store falls back to substring search
    and never calls search().
    """

    def is_enabled(self) -> bool:
        ...

    def search(self, query: str, limit: int = 10) -> list[int]:
        """
        Returns:
            Entry ids, best match first
        """
        ...

    def suggest_tags(self, text: str) -> list[str]:
        """Heuristic tag names for the text. No accuracy contract."""
        ...

    def find_similar(
        self,
        entry: Entry,
        candidates: Iterable[Entry],
        limit: int = 5,
    ) -> list[int]:
        """
        Entries similar to ``entry``.

        ``candidates`` is a pool supplied by the store; providers with
        their own index may ignore it.

        Returns:
            Entry ids, most similar first, never including entry.id
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

PROVIDER_KINDS = ("provenance", "embedding", "semantic")


class ProviderRegistry:
    """
    Provider classes by kind and name.

    The store config names providers (``[semantic] name = "keywords"``);
    the registry maps those names to classes and builds them with the
    section's remaining keys as keyword params.

    Example:
        registry = ProviderRegistry()
        registry.register("semantic", "keywords", KeywordSemanticSearch)
        provider = registry.create("semantic", "keywords", {"min_similarity": 0.2})
    """

    def __init__(self):
        self._classes: dict[str, dict[str, type]] = {kind: {} for kind in PROVIDER_KINDS}
        self._builtins_loaded = False

    def _load_builtins(self) -> None:
        if self._builtins_loaded:
            return
        self._builtins_loaded = True
        # Built-in modules register themselves on import
        from . import git  # noqa: F401
        from . import keywords  # noqa: F401

    def _table(self, kind: str) -> dict[str, type]:
        try:
            return self._classes[kind]
        except KeyError:
            raise ValueError(f"Unknown provider kind: {kind!r}") from None

    def register(self, kind: str, name: str, provider_class: type) -> None:
        self._table(kind)[name] = provider_class

    def available(self, kind: str) -> list[str]:
        self._load_builtins()
        return sorted(self._table(kind))

    def create(self, kind: str, name: str, params: Optional[dict] = None):
        """
        Instantiate a registered provider.

        Raises:
            ValueError: no provider of that kind has this name
            RuntimeError: the provider could not be constructed
        """
        self._load_builtins()
        table = self._table(kind)
        if name not in table:
            raise ValueError(
                f"Unknown {kind} provider: {name!r} "
                f"(available: {', '.join(sorted(table)) or 'none'})"
            )
        try:
            return table[name](**(params or {}))
        except Exception as e:
            raise RuntimeError(f"Cannot create {kind} provider {name!r}: {e}") from e


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """The process-wide provider registry."""
    return _registry
