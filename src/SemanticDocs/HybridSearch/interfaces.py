"""Formal contracts for the external collaborators of the hybrid search pipeline.

Indexing and query flows reach the outside world exclusively through the
protocols below. Concrete implementations are constructed explicitly, passed
into the pipeline, and closed by their owner; nothing in the core keeps a
module-level client. That makes it trivial to swap in fakes for tests:

- ``EmbeddingProvider`` turns batches of text into fixed-size vectors. The
  production implementation is ``providers.VoyageEmbeddingProvider``; the
  offline harness uses ``devtools.HashEmbeddingProvider``.
- ``RerankProvider`` scores a fixed candidate list against a query
  (``providers.VoyageRerankProvider``).
- ``SearchStore`` persists :class:`~SemanticDocs.HybridSearch.types.StoredChunk`
  records and answers vector and keyword lookups. ``devtools.InMemorySearchStore``
  is the reference implementation used by the CLI and tests.

Providers signal failures with ``TransientProviderError`` (worth retrying) or
``PermanentInputError`` (not worth retrying). Any other exception is treated
as permanent by the default retry classification.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Literal, Protocol, runtime_checkable

import numpy as np

from .types import StoredChunk

InputType = Literal["document", "query"]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol describing a batched embedding capability.

    Examples:
        >>> from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider
        >>> provider: EmbeddingProvider = HashEmbeddingProvider(dimensions=8)
        >>> len(provider.embed(["hello"])[0])
        8
    """

    @property
    def model(self) -> str:
        """Model identifier recorded on every embedding record."""

    @property
    def dimensions(self) -> int:
        """Dimensionality of the vectors this provider returns."""

    def embed(
        self, texts: Sequence[str], *, input_type: InputType = "document"
    ) -> list[Sequence[float]]:
        """Embed ``texts`` in one request.

        Args:
            texts: Texts to embed; the result preserves their order.
            input_type: ``"document"`` for indexing, ``"query"`` for search.

        Returns:
            One vector per input text.

        Raises:
            TransientProviderError: Rate limits, timeouts, connection resets.
            PermanentInputError: Malformed input or authentication failures.
        """

    def close(self) -> None:
        """Release network resources held by the provider."""


@runtime_checkable
class RerankProvider(Protocol):
    """Protocol describing a cross-encoder reranking capability."""

    def rerank(
        self, query: str, documents: Sequence[str], *, top_k: int | None = None
    ) -> list[tuple[int, float]]:
        """Score ``documents`` against ``query``.

        Returns:
            ``(index, relevance)`` pairs referring to positions in
            ``documents``, best first. Implementations must not invent indices.
        """

    def close(self) -> None:
        """Release network resources held by the provider."""


@runtime_checkable
class SearchStore(Protocol):
    """Protocol describing the persistence and search backend.

    Implementations own their concurrency control; the pipeline calls these
    methods from worker threads without holding any lock of its own.
    """

    def vector_search(
        self,
        vector: np.ndarray,
        limit: int,
        filters: Mapping[str, str] | None = None,
    ) -> list[tuple[StoredChunk, float]]:
        """Return up to ``limit`` ``(chunk, similarity)`` pairs, best first."""

    def keyword_search(
        self,
        query: str,
        limit: int,
        filters: Mapping[str, str] | None = None,
    ) -> list[tuple[StoredChunk, float]]:
        """Return up to ``limit`` ``(chunk, lexical score)`` pairs, best first."""

    def upsert(self, chunks: Sequence[StoredChunk]) -> None:
        """Insert or replace ``chunks`` keyed by chunk id."""

    def delete(self, chunk_ids: Sequence[str]) -> None:
        """Remove the chunks referenced by ``chunk_ids``; unknown ids are ignored."""

    def get(self, doc_id: str) -> list[StoredChunk]:
        """Return every stored chunk of ``doc_id`` ordered by chunk index."""

    def document_ids(self) -> list[str]:
        """Return the identifiers of all documents with stored chunks."""

    def stats(self) -> Mapping[str, object]:
        """Return implementation-defined statistics (chunk/document counts, products)."""

    def close(self) -> None:
        """Flush and release backend resources."""
