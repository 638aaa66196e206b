"""Developer tooling for SemanticDocs hybrid search.

The ``devtools`` package makes it easy to run the full indexing and query
pipelines without external services: a deterministic hash embedding provider
and an in-memory search store that conforms to the production interfaces.
Tests and the ``--offline`` CLI mode import from this single namespace.
"""

from .features import HashEmbeddingProvider
from .memory_store import InMemorySearchStore, matches_filters

__all__ = (
    "HashEmbeddingProvider",
    "InMemorySearchStore",
    "matches_filters",
)
