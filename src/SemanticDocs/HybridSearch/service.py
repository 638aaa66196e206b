"""Hybrid search query service.

``HybridSearchService.search`` runs the query flow end to end:

1. dual retrieval (vector + keyword, degraded when one branch fails);
2. Reciprocal Rank Fusion of the surviving rankings;
3. optional MMR diversification of the fused head;
4. optional cross-encoder reranking of the diversified head;
5. result shaping: overlap-insensitive de-duplication, a per-document cap,
   and truncation to the requested limit.

Stages 2, 3, and 5 are pure functions of their inputs; only retrieval and
reranking touch the network. Nothing is cached between queries.
"""

from __future__ import annotations

import atexit
import time
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence

from SemanticDocs.concurrency import CancellationToken

from .config import HybridSearchConfig
from .diversity import MaximalMarginalRelevance
from .errors import raise_if_cancelled
from .fusion import ReciprocalRankFusion, fusion_rank_of
from .interfaces import EmbeddingProvider, RerankProvider, SearchStore
from .observability import Observability
from .rerank import RerankerAdapter
from .retrieval import DualRetriever, QueryExpander
from .retry import RetryExecutor, RetryPolicy
from .throttle import RequestThrottle
from .types import FusedCandidate, RankedResult, RerankOutcome, SearchRequest, SearchResponse

__all__ = ("HybridSearchService",)


class HybridSearchService:
    """Execute hybrid retrieval with RRF fusion, MMR, and optional reranking.

    Attributes:
        _store: Search backend shared with the indexing pipeline.
        _retriever: Concurrent vector/keyword retriever.
        _fusion: Reciprocal Rank Fusion helper.
        _mmr: Maximal marginal relevance selector.
        _reranker: Optional rerank adapter (``None`` when disabled).
        _observability: Observability facade for tracing and metrics.

    Examples:
        >>> from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider, InMemorySearchStore
        >>> service = HybridSearchService(InMemorySearchStore(), HashEmbeddingProvider(dimensions=16))
        >>> service.search(SearchRequest(query="replica set")).results
        []
    """

    def __init__(
        self,
        store: SearchStore,
        embedding_provider: EmbeddingProvider,
        config: Optional[HybridSearchConfig] = None,
        *,
        rerank_provider: Optional[RerankProvider] = None,
        throttle: Optional[RequestThrottle] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self._config = config or HybridSearchConfig()
        self._store = store
        self._provider = embedding_provider
        self._observability = observability or Observability()
        self._throttle = throttle or RequestThrottle(
            self._config.embedding.min_request_interval_ms, name="embedding"
        )
        fusion_config = self._config.fusion
        self._retriever = DualRetriever(
            store,
            embedding_provider,
            self._config.retrieval,
            throttle=self._throttle,
            retry=RetryExecutor(RetryPolicy.from_config(self._config.embedding)),
            expander=QueryExpander(fusion_config.query_synonyms),
            observability=self._observability,
        )
        self._fusion = ReciprocalRankFusion(fusion_config.k0, channel_weights=fusion_config.channel_weights)
        self._mmr = MaximalMarginalRelevance(fusion_config.mmr_lambda, fusion_config.mmr_fetch_k)
        self._reranker: Optional[RerankerAdapter] = None
        if rerank_provider is not None and self._config.rerank.enabled:
            self._reranker = RerankerAdapter(
                rerank_provider,
                self._config.rerank.timeout,
                max_workers=self._config.rerank.max_workers,
                observability=self._observability,
            )
        self._closed = False
        atexit.register(self.close)

    @property
    def config(self) -> HybridSearchConfig:
        return self._config

    @property
    def throttle(self) -> RequestThrottle:
        return self._throttle

    @property
    def observability(self) -> Observability:
        return self._observability

    def close(self) -> None:
        """Release the worker pools held by the service; providers and store stay open."""

        if getattr(self, "_closed", False):
            return
        self._closed = True
        self._retriever.close()
        if self._reranker is not None:
            self._reranker.close()

    def search(
        self, request: SearchRequest, cancel_token: Optional[CancellationToken] = None
    ) -> SearchResponse:
        """Execute a hybrid retrieval round trip for ``request``.

        Raises:
            RetrievalError: If both retrieval branches fail.
            OperationCancelled: If ``cancel_token`` fires mid-query.
            RuntimeError: If the service has been closed.
        """

        if self._closed:
            raise RuntimeError("HybridSearchService is closed")
        config = self._config
        metrics = self._observability.metrics
        with self._observability.trace("hybrid_search"):
            timings: Dict[str, float] = {}
            total_start = time.perf_counter()

            stage_start = time.perf_counter()
            retrieval = self._retriever.retrieve(
                request.query,
                request.limit,
                filters=request.filters or None,
                cancel_token=cancel_token,
            )
            timings["retrieve_ms"] = (time.perf_counter() - stage_start) * 1000

            stage_start = time.perf_counter()
            fused = self._fusion.fuse(retrieval.rankings())
            fusion_ranks = fusion_rank_of(fused)
            timings["fusion_ms"] = (time.perf_counter() - stage_start) * 1000
            raise_if_cancelled(cancel_token, "search")

            target = max(request.limit, config.rerank.top_k) if self._reranker else request.limit
            stage_start = time.perf_counter()
            if config.fusion.enable_mmr:
                head = self._mmr.select(fused, target)
            else:
                head = fused[:target]
            timings["mmr_ms"] = (time.perf_counter() - stage_start) * 1000

            outcome = RerankOutcome(candidates=list(head))
            if self._reranker is not None and head:
                stage_start = time.perf_counter()
                outcome = self._reranker.rerank(request.query, head, cancel_token=cancel_token)
                timings["rerank_ms"] = (time.perf_counter() - stage_start) * 1000
            raise_if_cancelled(cancel_token, "search")

            head_ids = {candidate.chunk_id for candidate in head}
            ordered = list(outcome.candidates)
            ordered.extend(candidate for candidate in fused if candidate.chunk_id not in head_ids)
            results = self._shape(ordered, outcome.scores, fusion_ranks, request.limit)
            timings["total_ms"] = (time.perf_counter() - total_start) * 1000

            metrics.increment("search.requests")
            metrics.observe("search.results", float(len(results)))
            metrics.observe("search.total_ms", timings["total_ms"])
            if retrieval.degraded:
                metrics.increment("search.degraded_responses")
            self._observability.logger.info(
                "hybrid-search",
                extra={
                    "event": {
                        "limit": request.limit,
                        "filters": request.filters,
                        "results": len(results),
                        "degraded": retrieval.degraded,
                        "reranked": outcome.applied,
                        "timings_ms": {key: round(value, 3) for key, value in timings.items()},
                    }
                },
            )
        return SearchResponse(
            results=results,
            degradations=list(retrieval.degradations),
            reranked=outcome.applied,
            rerank_fallback_reason=outcome.fallback_reason,
            timings_ms=timings,
        )

    def _shape(
        self,
        ordered: Sequence[FusedCandidate],
        rerank_scores: Mapping[str, float],
        fusion_ranks: Mapping[str, int],
        limit: int,
    ) -> List[RankedResult]:
        fusion_config = self._config.fusion
        emitted: set[str] = set()
        per_doc: Counter[str] = Counter()
        results: List[RankedResult] = []
        for candidate in ordered:
            stored = candidate.stored
            if stored is None:
                continue
            if fusion_config.dedupe_overlap and stored.content_key in emitted:
                continue
            if fusion_config.max_chunks_per_doc and per_doc[stored.doc_id] >= fusion_config.max_chunks_per_doc:
                continue
            emitted.add(stored.content_key)
            per_doc[stored.doc_id] += 1
            results.append(
                RankedResult(
                    chunk_id=candidate.chunk_id,
                    doc_id=stored.doc_id,
                    score=rerank_scores.get(candidate.chunk_id, candidate.fusion_score),
                    text=stored.text,
                    metadata=stored.metadata,
                    section_title=stored.section_title,
                    fusion_rank=fusion_ranks.get(candidate.chunk_id, 0),
                    contributing_ranks=dict(candidate.contributing_ranks),
                )
            )
            if len(results) >= limit:
                break
        return results

    def status(self) -> Dict[str, object]:
        """Summarise the store contents and service wiring."""

        stats = dict(self._store.stats())
        stats.update(
            {
                "embedding_model": self._provider.model,
                "dimensions": self._provider.dimensions,
                "rerank_enabled": self._reranker is not None,
                "mmr_enabled": self._config.fusion.enable_mmr,
                "throttle_acquired": self._throttle.acquired,
            }
        )
        self._observability.metrics.set_gauge("store.chunks", float(stats.get("chunks", 0) or 0))
        return stats
