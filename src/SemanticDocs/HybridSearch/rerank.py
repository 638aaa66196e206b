"""Optional cross-encoder reranking with fallback to the prior ordering.

Reranking is an enhancement: when the provider call fails, times out, or
returns an ordering that does not describe the submitted candidates, the
adapter hands back the input ordering untouched and records why.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Sequence, Tuple

from SemanticDocs.concurrency import CancellationToken, RecyclingExecutor

from .errors import PermanentInputError, raise_if_cancelled
from .interfaces import RerankProvider
from .observability import Observability
from .types import FusedCandidate, RerankOutcome

__all__ = ("RerankerAdapter",)

logger = logging.getLogger(__name__)


class RerankerAdapter:
    """Submit a fixed candidate set to a :class:`RerankProvider`.

    Args:
        provider: Reranking capability.
        timeout: Seconds to wait for the provider before falling back.
        top_k: Optional cap passed to the provider.
        max_workers: Concurrent provider calls. A call that times out keeps
            running in the background, so its pool is retired and later
            calls start on fresh workers.
        observability: Metrics and tracing facade.
    """

    def __init__(
        self,
        provider: RerankProvider,
        timeout: float = 10.0,
        *,
        top_k: Optional[int] = None,
        max_workers: int = 4,
        observability: Optional[Observability] = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._provider = provider
        self._timeout = float(timeout)
        self._top_k = top_k
        self._pool = RecyclingExecutor(max_workers, "semanticdocs-rerank")
        self._observability = observability or Observability()

    def rerank(
        self,
        query: str,
        candidates: Sequence[FusedCandidate],
        texts: Optional[Sequence[str]] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RerankOutcome:
        """Reorder ``candidates`` by provider relevance.

        Args:
            query: Query text.
            candidates: Candidates in their pre-rerank order.
            texts: Candidate texts aligned with ``candidates``; read from the
                stored chunks when omitted.
            cancel_token: Optional cancellation token checked before the call.

        Returns:
            :class:`RerankOutcome` with ``applied=True`` and the provider's
            ordering, or the input ordering with ``applied=False`` and a
            ``fallback_reason``.
        """

        prior = list(candidates)
        if not prior:
            return RerankOutcome(candidates=[], applied=False)
        raise_if_cancelled(cancel_token, "rerank")
        if texts is None:
            texts = [candidate.stored.text if candidate.stored is not None else "" for candidate in prior]
        if len(texts) != len(prior):
            raise ValueError("texts must align with candidates")

        metrics = self._observability.metrics
        start = time.perf_counter()
        future = self._pool.submit(
            self._provider.rerank, query, list(texts), top_k=self._top_k
        )
        try:
            pairs = future.result(timeout=self._timeout)
            ordering = self._validate(pairs, len(prior))
        except FutureTimeoutError:
            self._pool.abandon(future)
            return self._fallback(prior, f"timeout after {self._timeout:g}s")
        except Exception as exc:
            message = str(exc)
            return self._fallback(prior, f"{type(exc).__name__}: {message}" if message else type(exc).__name__)
        finally:
            metrics.observe("rerank.latency_ms", (time.perf_counter() - start) * 1000)

        raise_if_cancelled(cancel_token, "rerank")
        placed = {index for index, _ in ordering}
        reordered = [prior[index] for index, _ in ordering]
        reordered.extend(candidate for position, candidate in enumerate(prior) if position not in placed)
        scores = {prior[index].chunk_id: score for index, score in ordering}
        metrics.increment("rerank.applied")
        return RerankOutcome(candidates=reordered, scores=scores, applied=True)

    @staticmethod
    def _validate(pairs: Sequence[Tuple[int, float]], size: int) -> List[Tuple[int, float]]:
        ordering: List[Tuple[int, float]] = []
        seen: Dict[int, float] = {}
        for entry in pairs:
            try:
                index, score = entry
                index = int(index)
                score = float(score)
            except (TypeError, ValueError) as exc:
                raise PermanentInputError(f"malformed rerank entry {entry!r}") from exc
            if not 0 <= index < size:
                raise PermanentInputError(f"rerank index {index} outside candidate range 0..{size - 1}")
            if index in seen:
                raise PermanentInputError(f"rerank index {index} returned twice")
            seen[index] = score
            ordering.append((index, score))
        return ordering

    def _fallback(self, prior: List[FusedCandidate], reason: str) -> RerankOutcome:
        self._observability.metrics.increment("rerank.fallback")
        logger.warning(
            "rerank-fallback",
            extra={"event": {"reason": reason, "candidates": len(prior)}},
        )
        return RerankOutcome(candidates=list(prior), applied=False, fallback_reason=reason)

    def close(self) -> None:
        self._pool.shutdown()
