"""Concurrent vector and keyword retrieval with graceful degradation.

``DualRetriever.retrieve`` launches two branches on a shared thread pool
(a :class:`RecyclingExecutor`, so a branch that hangs past its deadline does
not hold workers needed by later queries):

- vector: embed the query (through the shared throttle and retry policy),
  then ``store.vector_search``;
- keyword: ``store.keyword_search`` on the (optionally synonym-expanded)
  query text.

Both branches over-fetch ``min(candidate_cap, ceil(limit * overfetch_factor))``
hits. Each branch is joined against its own deadline. A branch that raises or
misses its deadline is recorded as a :class:`PartialRetrievalDegradation` and
the query continues on the survivor; when both fail a :class:`RetrievalError`
is raised. Cancelling the caller's token aborts the wait immediately and the
branches' late results are dropped.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, wait
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from SemanticDocs.concurrency import CancellationToken, RecyclingExecutor

from .config import RetrievalConfig
from .errors import (
    OperationCancelled,
    PartialRetrievalDegradation,
    PermanentInputError,
    RetrievalError,
    raise_if_cancelled,
)
from .interfaces import EmbeddingProvider, SearchStore
from .observability import Observability
from .retry import RetryExecutor, RetryPolicy
from .throttle import RequestThrottle
from .tokenization import tokenize
from .types import RetrievalHit, RetrievalResult, RetrievalSource, StoredChunk

__all__ = ("DualRetriever", "QueryExpander")

logger = logging.getLogger(__name__)

_BRANCHES: Tuple[RetrievalSource, ...] = ("vector", "keyword")


class QueryExpander:
    """Append configured synonyms to keyword queries.

    Examples:
        >>> QueryExpander({"db": ["database"]}).expand("create db index")
        'create db index database'
    """

    def __init__(self, synonyms: Mapping[str, Sequence[str]] | None = None) -> None:
        self._synonyms = {
            term.lower(): tuple(value for value in values)
            for term, values in (synonyms or {}).items()
        }

    @property
    def enabled(self) -> bool:
        return bool(self._synonyms)

    def expand(self, query: str) -> str:
        if not self._synonyms:
            return query
        seen = set(tokenize(query))
        extras: List[str] = []
        for token in tokenize(query):
            for synonym in self._synonyms.get(token, ()):
                key = synonym.lower()
                if key not in seen:
                    seen.add(key)
                    extras.append(synonym)
        return query if not extras else f"{query} {' '.join(extras)}"


def _to_hits(
    pairs: Sequence[Tuple[StoredChunk, float]], source: RetrievalSource, limit: int
) -> List[RetrievalHit]:
    hits: List[RetrievalHit] = []
    seen: set[str] = set()
    for stored, score in pairs:
        if stored.chunk_id in seen:
            continue
        seen.add(stored.chunk_id)
        hits.append(
            RetrievalHit(
                chunk_id=stored.chunk_id,
                raw_score=float(score),
                rank=len(hits) + 1,
                source=source,
                stored=stored,
            )
        )
        if len(hits) >= limit:
            break
    return hits


class DualRetriever:
    """Run vector and keyword retrieval concurrently against a :class:`SearchStore`.

    Args:
        store: Search backend.
        provider: Embedding provider used for the query vector.
        config: Over-fetch and timeout settings.
        throttle: Shared request throttle (also used by the embedding batcher).
        retry: Retry executor for the query embedding call.
        expander: Optional synonym expansion applied to the keyword branch.
        observability: Metrics and tracing facade.
    """

    def __init__(
        self,
        store: SearchStore,
        provider: EmbeddingProvider,
        config: Optional[RetrievalConfig] = None,
        *,
        throttle: Optional[RequestThrottle] = None,
        retry: Optional[RetryExecutor] = None,
        expander: Optional[QueryExpander] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._config = config or RetrievalConfig()
        self._throttle = throttle or RequestThrottle(0)
        self._retry = retry or RetryExecutor(RetryPolicy(max_attempts=2, backoff_base=0.2, backoff_max=2.0))
        self._expander = expander or QueryExpander()
        self._observability = observability or Observability()
        workers = self._config.executor_max_workers or 8
        self._pool = RecyclingExecutor(max(2, workers), "semanticdocs-retrieve")

    def fetch_k(self, limit: int) -> int:
        """Hits requested from each branch for a final ``limit``."""
        if limit <= 0:
            raise ValueError("limit must be positive")
        wanted = math.ceil(limit * self._config.overfetch_factor)
        return max(1, min(self._config.candidate_cap, wanted))

    def retrieve(
        self,
        query: str,
        limit: int,
        *,
        filters: Optional[Mapping[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """Retrieve ranked hits from both branches.

        Raises:
            RetrievalError: If both branches fail or time out.
            OperationCancelled: If ``cancel_token`` fires before both branches finish.
        """

        raise_if_cancelled(cancel_token, "retrieval")
        fetch_k = self.fetch_k(limit)
        branch_token = CancellationToken()
        cancelled: Future[None] = Future()
        unregister = (
            cancel_token.add_callback(lambda: self._signal(cancelled, branch_token))
            if cancel_token is not None
            else (lambda: None)
        )
        started = time.monotonic()
        futures: Dict[str, Future[List[RetrievalHit]]] = {
            "vector": self._pool.submit(self._vector_branch, query, fetch_k, filters, branch_token),
            "keyword": self._pool.submit(self._keyword_branch, query, fetch_k, filters),
        }
        deadlines = {
            "vector": started + self._config.vector_timeout,
            "keyword": started + self._config.keyword_timeout,
        }
        result = RetrievalResult(fetch_k=fetch_k)
        try:
            for branch in _BRANCHES:
                future = futures[branch]
                remaining = max(0.0, deadlines[branch] - time.monotonic())
                wait([future, cancelled], timeout=remaining, return_when=FIRST_COMPLETED)
                raise_if_cancelled(cancel_token, "retrieval")
                reason = self._collect(branch, future, result)
                if reason is not None:
                    result.degradations.append(PartialRetrievalDegradation(branch, reason))
        except OperationCancelled:
            for future in futures.values():
                self._pool.abandon(future)
            self._observability.metrics.increment("search.cancelled")
            raise
        finally:
            branch_token.cancel()
            unregister()

        metrics = self._observability.metrics
        for degradation in result.degradations:
            metrics.increment("search.degraded", branch=degradation.branch)
            logger.warning(
                "retrieval-branch-degraded",
                extra={
                    "event": {
                        "branch": degradation.branch,
                        "reason": degradation.reason,
                        "fetch_k": fetch_k,
                    }
                },
            )
        if len(result.degradations) == len(_BRANCHES):
            raise RetrievalError(
                "both retrieval branches failed: "
                + "; ".join(f"{d.branch}: {d.reason}" for d in result.degradations),
                result.degradations,
            )
        metrics.observe("search.vector_hits", float(len(result.vector_hits)))
        metrics.observe("search.keyword_hits", float(len(result.keyword_hits)))
        return result

    @staticmethod
    def _signal(cancelled: Future[None], branch_token: CancellationToken) -> None:
        branch_token.cancel()
        if not cancelled.done():
            cancelled.set_result(None)

    def _collect(
        self, branch: str, future: Future[List[RetrievalHit]], result: RetrievalResult
    ) -> Optional[str]:
        """Store the branch's hits on ``result``; return a failure reason instead when it failed."""

        if not future.done():
            self._pool.abandon(future)
            timeout = self._config.vector_timeout if branch == "vector" else self._config.keyword_timeout
            return f"timeout after {timeout:g}s"
        try:
            hits = future.result()
        except CancelledError:
            return "cancelled"
        except Exception as exc:
            logger.debug("retrieval-branch-error", exc_info=True, extra={"event": {"branch": branch}})
            message = str(exc)
            return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
        if branch == "vector":
            result.vector_hits = hits
        else:
            result.keyword_hits = hits
        return None

    def _embed_query(self, query: str, cancel_token: CancellationToken) -> np.ndarray:
        def request() -> np.ndarray:
            self._throttle.acquire()
            vectors = self._provider.embed([query], input_type="query")
            if len(vectors) != 1:
                raise PermanentInputError(f"provider returned {len(vectors)} vectors for one query")
            return np.asarray(vectors[0], dtype=np.float32).reshape(-1)

        vector = self._retry.run(request, cancel_token=cancel_token, operation="query embedding")
        if vector.shape[0] != self._provider.dimensions:
            raise PermanentInputError(
                f"query embedding has dimension {vector.shape[0]}, expected {self._provider.dimensions}"
            )
        return vector

    def _vector_branch(
        self,
        query: str,
        fetch_k: int,
        filters: Optional[Mapping[str, str]],
        cancel_token: CancellationToken,
    ) -> List[RetrievalHit]:
        with self._observability.trace("vector_branch"):
            vector = self._embed_query(query, cancel_token)
            raise_if_cancelled(cancel_token, "vector retrieval")
            pairs = self._store.vector_search(vector, fetch_k, filters)
        return _to_hits(pairs, "vector", fetch_k)

    def _keyword_branch(
        self, query: str, fetch_k: int, filters: Optional[Mapping[str, str]]
    ) -> List[RetrievalHit]:
        with self._observability.trace("keyword_branch"):
            pairs = self._store.keyword_search(self._expander.expand(query), fetch_k, filters)
        return _to_hits(pairs, "keyword", fetch_k)

    def close(self) -> None:
        self._pool.shutdown()
