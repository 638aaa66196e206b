"""Batched, paced, and retried submission of chunks to an embedding provider.

``EmbeddingBatcher`` turns the ``to_embed`` side of a change set into
:class:`~SemanticDocs.HybridSearch.types.EmbeddingRecord` objects:

- ``plan_batches`` groups chunks in input order, flushing whenever the next
  chunk would push the batch past ``max_batch_size`` chunks or
  ``max_batch_tokens`` cumulative tokens.
- ``embed`` keeps at most ``parallelism`` batches in flight. Every request,
  retries included, first acquires the shared :class:`RequestThrottle`.
  Transient failures are retried under the :class:`RetryPolicy`; permanent
  failures (or exhausted retries) fail every chunk of that batch and the run
  moves on. Vectors are validated one by one, so a bad vector only fails its
  own chunk.

Completion order of batches is not observable: records come back sorted by
the input order of their chunks.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from SemanticDocs.concurrency import CancellationToken, create_executor, shutdown_executor

from .config import EmbeddingConfig
from .errors import (
    ConfigurationError,
    OperationCancelled,
    PermanentInputError,
    raise_if_cancelled,
)
from .interfaces import EmbeddingProvider
from .observability import Observability
from .retry import RetryExecutor, RetryPolicy
from .throttle import RequestThrottle
from .types import BatchOutcome, Chunk, ChunkFailure, EmbeddingOutcome, EmbeddingRecord

__all__ = ("EmbeddingBatcher",)

logger = logging.getLogger(__name__)

_BatchResult = Tuple[BatchOutcome, List[EmbeddingRecord], List[ChunkFailure]]


class EmbeddingBatcher:
    """Submit chunks to an :class:`EmbeddingProvider` in bounded, paced batches.

    Args:
        provider: Embedding capability; its ``dimensions`` must match the config.
        config: Batching, pacing, retry, and parallelism settings.
        throttle: Shared process-wide throttle; built from
            ``config.min_request_interval_ms`` when omitted.
        retry: Retry executor; built from the config when omitted.
        observability: Metrics and tracing facade.

    Raises:
        ConfigurationError: If provider and config disagree on dimensionality.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        *,
        throttle: Optional[RequestThrottle] = None,
        retry: Optional[RetryExecutor] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self._config = config or EmbeddingConfig(model=provider.model, dimensions=provider.dimensions)
        if provider.dimensions != self._config.dimensions:
            raise ConfigurationError(
                f"embedding provider returns {provider.dimensions}-d vectors but "
                f"{self._config.dimensions} are configured"
            )
        self._provider = provider
        self._throttle = throttle or RequestThrottle(
            self._config.min_request_interval_ms, name="embedding"
        )
        self._retry = retry or RetryExecutor(RetryPolicy.from_config(self._config))
        self._observability = observability or Observability()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def throttle(self) -> RequestThrottle:
        return self._throttle

    def plan_batches(self, chunks: Sequence[Chunk]) -> List[List[Chunk]]:
        """Group ``chunks`` into batches bounded by count and cumulative tokens.

        A single chunk larger than the token budget still forms its own batch.

        Examples:
            >>> # 25 chunks with max_batch_size=8 -> batch sizes [8, 8, 8, 1]
        """

        max_size = self._config.max_batch_size
        max_tokens = self._config.max_batch_tokens
        batches: List[List[Chunk]] = []
        current: List[Chunk] = []
        current_tokens = 0
        for chunk in chunks:
            tokens = chunk.token_count
            if current and (len(current) >= max_size or current_tokens + tokens > max_tokens):
                batches.append(current)
                current, current_tokens = [], 0
            current.append(chunk)
            current_tokens += tokens
        if current:
            batches.append(current)
        return batches

    def embed(
        self,
        chunks: Sequence[Chunk],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EmbeddingOutcome:
        """Embed ``chunks`` and return records plus per-chunk failures.

        Raises:
            OperationCancelled: If ``cancel_token`` fires; in-flight results are
                discarded and queued batches are never sent.
        """

        raise_if_cancelled(cancel_token, "embedding")
        batches = self.plan_batches(chunks)
        outcome = EmbeddingOutcome()
        if not batches:
            return outcome
        order = {chunk.chunk_id: position for position, chunk in enumerate(chunks)}
        executor = self._ensure_executor()
        in_flight: Dict[Future[_BatchResult], int] = {}
        queue: Iterator[Tuple[int, List[Chunk]]] = iter(enumerate(batches))

        def cancel_in_flight() -> None:
            for future in list(in_flight):
                future.cancel()

        def submit_next() -> bool:
            item = next(queue, None)
            if item is None:
                return False
            index, batch = item
            future = executor.submit(self._run_batch, index, batch, cancel_token)
            in_flight[future] = index
            return True

        unregister: Callable[[], None] = (
            cancel_token.add_callback(cancel_in_flight) if cancel_token is not None else (lambda: None)
        )
        try:
            for _ in range(self._config.parallelism):
                if not submit_next():
                    break
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    in_flight.pop(future)
                    raise_if_cancelled(cancel_token, "embedding")
                    batch_outcome, records, failures = future.result()
                    outcome.batches.append(batch_outcome)
                    outcome.records.extend(records)
                    outcome.failures.extend(failures)
                    submit_next()
        except OperationCancelled:
            cancel_in_flight()
            self._observability.metrics.increment("embedding.cancelled")
            logger.info(
                "embedding-cancelled",
                extra={"event": {"batches": len(batches), "completed": len(outcome.batches)}},
            )
            raise
        finally:
            unregister()

        outcome.records.sort(key=lambda record: order[record.chunk_id])
        outcome.failures.sort(key=lambda failure: order[failure.chunk_id])
        outcome.batches.sort(key=lambda batch: batch.batch_index)
        return outcome

    def _run_batch(
        self,
        batch_index: int,
        batch: Sequence[Chunk],
        cancel_token: Optional[CancellationToken],
    ) -> _BatchResult:
        texts = [chunk.text for chunk in batch]
        batch_outcome = BatchOutcome(batch_index=batch_index, chunk_ids=[c.chunk_id for c in batch])
        metrics = self._observability.metrics

        def request() -> List[Sequence[float]]:
            batch_outcome.attempts += 1
            if batch_outcome.attempts > 1:
                metrics.increment("embedding.retries")
            self._throttle.acquire()
            return self._provider.embed(texts, input_type="document")

        start = time.perf_counter()
        try:
            vectors = self._retry.run(request, cancel_token=cancel_token, operation="embedding batch")
            if len(vectors) != len(batch):
                raise PermanentInputError(
                    f"provider returned {len(vectors)} vectors for {len(batch)} inputs"
                )
        except OperationCancelled:
            raise
        except Exception as exc:
            batch_outcome.duration_ms = (time.perf_counter() - start) * 1000
            reason = "transient-exhausted" if self._retry.policy.is_transient(exc) else "permanent"
            batch_outcome.failed = len(batch)
            batch_outcome.error = f"{type(exc).__name__}: {exc}"
            metrics.increment("embedding.batches", status="failed")
            metrics.increment("embedding.chunks_failed", amount=float(len(batch)), reason=reason)
            logger.warning(
                "embedding-batch-failed",
                extra={
                    "event": {
                        "batch_index": batch_index,
                        "chunks": len(batch),
                        "attempts": batch_outcome.attempts,
                        "reason": reason,
                        "error": batch_outcome.error,
                    }
                },
            )
            failures = [ChunkFailure(chunk.chunk_id, reason, str(exc)) for chunk in batch]
            return batch_outcome, [], failures

        records: List[EmbeddingRecord] = []
        failures: List[ChunkFailure] = []
        for chunk, vector in zip(batch, vectors):
            try:
                records.append(
                    EmbeddingRecord.create(
                        chunk,
                        vector,
                        model=self._provider.model,
                        dimensions=self._config.dimensions,
                    )
                )
            except PermanentInputError as exc:
                failures.append(ChunkFailure(chunk.chunk_id, "invalid-vector", str(exc)))
        batch_outcome.duration_ms = (time.perf_counter() - start) * 1000
        batch_outcome.succeeded = len(records)
        batch_outcome.failed = len(failures)
        metrics.increment("embedding.batches", status="ok" if not failures else "partial")
        metrics.observe("embedding.batch_ms", batch_outcome.duration_ms)
        if failures:
            metrics.increment(
                "embedding.chunks_failed", amount=float(len(failures)), reason="invalid-vector"
            )
            logger.warning(
                "embedding-vector-rejected",
                extra={"event": {"batch_index": batch_index, "rejected": len(failures)}},
            )
        return batch_outcome, records, failures

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = create_executor(self._config.parallelism, "semanticdocs-embed")
        return self._executor

    def close(self) -> None:
        """Shut down the worker pool. The provider is owned by the caller."""
        shutdown_executor(self._executor)
        self._executor = None
