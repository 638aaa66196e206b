"""
SemanticDocs.HybridSearch exposes the indexing and query primitives behind
SemanticDocs hybrid search over technical documentation. Documents are split
into structure-aware chunks, only changed chunks are re-embedded, and queries
combine semantic and lexical retrieval before fusion, diversification, and
optional reranking.

Core modules and how they interrelate:

- ``chunking`` splits markdown/text into token-bounded, overlapping chunks that
  follow section headings and never split a fenced code block. ``changes``
  fingerprints chunk text and classifies chunks against stored records as new,
  changed, unchanged, or deleted.
- ``embedding`` batches chunks for an ``EmbeddingProvider`` under a shared
  ``throttle.RequestThrottle`` (pyrate-limiter) and the ``retry.RetryPolicy``
  executed with tenacity. ``pipeline.IndexingPipeline`` drives chunking,
  change detection, embedding, and store writes per document.
- ``retrieval.DualRetriever`` runs vector and keyword lookups concurrently and
  degrades to a single branch when the other fails or times out.
  ``fusion.ReciprocalRankFusion`` merges the rankings, ``diversity`` applies
  maximal marginal relevance, and ``rerank.RerankerAdapter`` optionally
  reorders the head with a cross-encoder, falling back on any failure.
- ``service.HybridSearchService`` orchestrates the query flow and shapes the
  final results (overlap-insensitive de-duplication, per-document caps).
- ``types``, ``interfaces``, and ``errors`` provide the shared contracts.
  ``providers`` and ``settings`` implement the hosted Voyage AI providers;
  ``devtools`` holds an offline hash embedding provider and an in-memory store.
- ``config`` defines the frozen dataclasses for every tunable and the JSON/YAML
  ``HybridSearchConfigManager``; ``logging_utils`` and ``observability`` carry
  structured logging and in-process metrics. ``cli`` exposes ``semanticdocs``.
"""

from __future__ import annotations

__all__ = (
    "ChangeDetector",
    "Chunk",
    "Chunker",
    "DualRetriever",
    "EmbeddingBatcher",
    "HybridSearchConfig",
    "HybridSearchConfigManager",
    "HybridSearchService",
    "IndexSummary",
    "IndexingPipeline",
    "MaximalMarginalRelevance",
    "Observability",
    "PartialRetrievalDegradation",
    "PermanentInputError",
    "RankedResult",
    "ReciprocalRankFusion",
    "RequestThrottle",
    "RerankerAdapter",
    "RetrievalError",
    "RetryExecutor",
    "RetryPolicy",
    "SearchRequest",
    "SearchResponse",
    "SourceDocument",
    "TransientProviderError",
)

from .changes import ChangeDetector
from .chunking import Chunker
from .config import HybridSearchConfig, HybridSearchConfigManager
from .diversity import MaximalMarginalRelevance
from .embedding import EmbeddingBatcher
from .errors import (
    PartialRetrievalDegradation,
    PermanentInputError,
    RetrievalError,
    TransientProviderError,
)
from .fusion import ReciprocalRankFusion
from .observability import Observability
from .pipeline import IndexingPipeline
from .rerank import RerankerAdapter
from .retrieval import DualRetriever
from .retry import RetryExecutor, RetryPolicy
from .service import HybridSearchService
from .throttle import RequestThrottle
from .types import (
    Chunk,
    IndexSummary,
    RankedResult,
    SearchRequest,
    SearchResponse,
    SourceDocument,
)
