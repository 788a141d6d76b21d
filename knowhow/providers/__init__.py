"""Collaborator providers: provenance, embedding, semantic search."""

from .base import (
    EmbeddingProvider,
    ProvenanceProvider,
    ProviderRegistry,
    SemanticSearchProvider,
    get_registry,
)

__all__ = [
    "EmbeddingProvider",
    "ProvenanceProvider",
    "ProviderRegistry",
    "SemanticSearchProvider",
    "get_registry",
]
