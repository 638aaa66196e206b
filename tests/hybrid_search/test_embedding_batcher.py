"""Batching, pacing, retry, and failure isolation of the embedding batcher."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import List, Sequence

import pytest

from SemanticDocs.concurrency import CancellationToken
from SemanticDocs.HybridSearch.changes import fingerprint
from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider
from SemanticDocs.HybridSearch.embedding import EmbeddingBatcher
from SemanticDocs.HybridSearch.errors import (
    ConfigurationError,
    OperationCancelled,
    PermanentInputError,
    TransientProviderError,
)
from SemanticDocs.HybridSearch.observability import Observability
from SemanticDocs.HybridSearch.throttle import RequestThrottle
from SemanticDocs.HybridSearch.types import Chunk


def make_chunk(index: int, *, text: str | None = None, tokens: int = 10, doc_id: str = "doc.md") -> Chunk:
    body = text if text is not None else f"chunk number {index}"
    return Chunk(
        doc_id=doc_id,
        index=index,
        text=body,
        token_count=tokens,
        start_char=0,
        end_char=len(body),
        overlap_chars=0,
        fingerprint=fingerprint(body),
        content_key=fingerprint(body),
    )


class ScriptedProvider(HashEmbeddingProvider):
    """Hash provider whose responses can be overridden per call."""

    def __init__(self, *, dimensions: int, failures: Sequence[BaseException] = (), poison: str | None = None):
        super().__init__(dimensions=dimensions)
        self._failures: List[BaseException] = list(failures)
        self._poison = poison
        self._guard = threading.Lock()

    def embed(self, texts, *, input_type="document"):
        with self._guard:
            failure = self._failures.pop(0) if self._failures else None
        if failure is not None:
            self.calls.append(len(texts))
            raise failure
        if self._poison is not None and any(self._poison in text for text in texts):
            self.calls.append(len(texts))
            raise PermanentInputError("input rejected")
        return super().embed(texts, input_type=input_type)


def test_plan_batches_respects_batch_size(hash_provider, embedding_config) -> None:
    batcher = EmbeddingBatcher(hash_provider, embedding_config)
    chunks = [make_chunk(i) for i in range(25)]

    assert [len(batch) for batch in batcher.plan_batches(chunks)] == [8, 8, 8, 1]


def test_plan_batches_respects_token_budget(hash_provider, embedding_config) -> None:
    batcher = EmbeddingBatcher(hash_provider, replace(embedding_config, max_batch_tokens=25))
    chunks = [make_chunk(i, tokens=10) for i in range(5)] + [make_chunk(5, tokens=100)]

    assert [len(batch) for batch in batcher.plan_batches(chunks)] == [2, 2, 1, 1]


def test_embed_returns_records_in_input_order(hash_provider, embedding_config) -> None:
    observability = Observability()
    batcher = EmbeddingBatcher(hash_provider, embedding_config, observability=observability)
    chunks = [make_chunk(i) for i in range(25)]
    try:
        outcome = batcher.embed(chunks)
    finally:
        batcher.close()

    assert sorted(hash_provider.calls) == [1, 8, 8, 8]
    assert [record.chunk_id for record in outcome.records] == [chunk.chunk_id for chunk in chunks]
    assert outcome.failures == []
    assert [batch.batch_index for batch in outcome.batches] == [0, 1, 2, 3]
    assert batcher.throttle.acquired == 4
    assert observability.metrics.counter("embedding.batches", status="ok") == 4.0
    assert all(record.vector.shape == (embedding_config.dimensions,) for record in outcome.records)


def test_permanent_failure_fails_only_its_batch(embedding_config) -> None:
    provider = ScriptedProvider(dimensions=embedding_config.dimensions, poison="poison")
    batcher = EmbeddingBatcher(provider, embedding_config)
    chunks = [make_chunk(i) for i in range(16)]
    chunks[9] = make_chunk(9, text="poison pill")
    try:
        outcome = batcher.embed(chunks)
    finally:
        batcher.close()

    assert {failure.chunk_id for failure in outcome.failures} == {c.chunk_id for c in chunks[8:]}
    assert {failure.reason for failure in outcome.failures} == {"permanent"}
    assert [record.chunk_id for record in outcome.records] == [c.chunk_id for c in chunks[:8]]
    assert outcome.batches[1].attempts == 1
    assert outcome.batches[1].error == "PermanentInputError: input rejected"


def test_transient_failure_is_retried_through_the_throttle(embedding_config) -> None:
    provider = ScriptedProvider(
        dimensions=embedding_config.dimensions,
        failures=[TransientProviderError("rate limited", retry_after=0.0, status_code=429)],
    )
    observability = Observability()
    throttle = RequestThrottle(0)
    batcher = EmbeddingBatcher(provider, embedding_config, throttle=throttle, observability=observability)
    try:
        outcome = batcher.embed([make_chunk(i) for i in range(3)])
    finally:
        batcher.close()

    assert outcome.failures == []
    assert outcome.embedded_count == 3
    assert outcome.batches[0].attempts == 2
    assert throttle.acquired == 2
    assert observability.metrics.counter("embedding.retries") == 1.0


def test_exhausted_retries_mark_chunks_transient(embedding_config) -> None:
    provider = ScriptedProvider(
        dimensions=embedding_config.dimensions,
        failures=[TransientProviderError("unavailable", status_code=503) for _ in range(3)],
    )
    batcher = EmbeddingBatcher(provider, embedding_config)
    try:
        outcome = batcher.embed([make_chunk(0), make_chunk(1)])
    finally:
        batcher.close()

    assert [failure.reason for failure in outcome.failures] == ["transient-exhausted"] * 2
    assert outcome.batches[0].attempts == embedding_config.max_attempts
    assert outcome.records == []


def test_wrong_dimension_vector_fails_its_chunk_only(embedding_config) -> None:
    dims = embedding_config.dimensions

    class ShortVectorProvider(HashEmbeddingProvider):
        def embed(self, texts, *, input_type="document"):
            vectors = super().embed(texts, input_type=input_type)
            return [vector[: dims // 2] if "short" in text else vector for vector, text in zip(vectors, texts)]

    batcher = EmbeddingBatcher(ShortVectorProvider(dimensions=dims), embedding_config)
    chunks = [make_chunk(0), make_chunk(1, text="short vector"), make_chunk(2)]
    try:
        outcome = batcher.embed(chunks)
    finally:
        batcher.close()

    assert [failure.chunk_id for failure in outcome.failures] == [chunks[1].chunk_id]
    assert outcome.failures[0].reason == "invalid-vector"
    assert [record.chunk_id for record in outcome.records] == [chunks[0].chunk_id, chunks[2].chunk_id]


def test_provider_dimension_mismatch_is_a_configuration_error(embedding_config) -> None:
    with pytest.raises(ConfigurationError):
        EmbeddingBatcher(HashEmbeddingProvider(dimensions=embedding_config.dimensions + 1), embedding_config)


def test_cancelled_token_stops_before_any_request(hash_provider, embedding_config) -> None:
    token = CancellationToken()
    token.cancel()
    batcher = EmbeddingBatcher(hash_provider, embedding_config)

    with pytest.raises(OperationCancelled):
        batcher.embed([make_chunk(0)], cancel_token=token)
    assert hash_provider.calls == []


def test_empty_input_sends_nothing(hash_provider, embedding_config) -> None:
    outcome = EmbeddingBatcher(hash_provider, embedding_config).embed([])

    assert outcome.records == []
    assert hash_provider.calls == []
