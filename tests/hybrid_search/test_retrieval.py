"""Dual retrieval: concurrency, degradation, timeouts, and cancellation."""

from __future__ import annotations

import threading
import time

import pytest

from SemanticDocs.concurrency import CancellationToken
from SemanticDocs.HybridSearch.config import RetrievalConfig
from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider
from SemanticDocs.HybridSearch.errors import OperationCancelled, RetrievalError
from SemanticDocs.HybridSearch.observability import Observability
from SemanticDocs.HybridSearch.retrieval import DualRetriever, QueryExpander

QUERY = "primary election replica"


class ScriptedStore:
    """Delegate to a real store while letting a test break or stall one branch."""

    def __init__(self, inner, *, vector_error=None, keyword_error=None, vector_block=None, keyword_block=None):
        self.inner = inner
        self.vector_error = vector_error
        self.keyword_error = keyword_error
        self.vector_block = vector_block
        self.keyword_block = keyword_block
        self.keyword_queries: list[str] = []

    def vector_search(self, vector, limit, filters=None):
        if self.vector_block is not None:
            self.vector_block.wait(5.0)
        if self.vector_error is not None:
            raise self.vector_error
        return self.inner.vector_search(vector, limit, filters)

    def keyword_search(self, query, limit, filters=None):
        self.keyword_queries.append(query)
        if self.keyword_block is not None:
            self.keyword_block.wait(5.0)
        if self.keyword_error is not None:
            raise self.keyword_error
        return self.inner.keyword_search(query, limit, filters)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def make_retriever(hash_provider):
    created = []

    def _make(store, *, provider=None, **config):
        retriever = DualRetriever(
            store,
            provider or hash_provider,
            RetrievalConfig(**config),
            expander=QueryExpander({"primary": ["leader"]}),
            observability=Observability(),
        )
        created.append(retriever)
        return retriever

    yield _make
    for retriever in created:
        retriever.close()


def test_both_branches_contribute(indexed_store, make_retriever) -> None:
    result = make_retriever(indexed_store).retrieve(QUERY, 4)

    assert not result.degraded
    assert result.fetch_k == 12
    assert result.vector_hits and result.keyword_hits
    assert [hit.rank for hit in result.vector_hits] == list(range(1, len(result.vector_hits) + 1))
    assert {hit.source for hit in result.keyword_hits} == {"keyword"}
    assert all(hit.stored is not None for hit in result.vector_hits)
    assert set(result.rankings()) == {"vector", "keyword"}


def test_keyword_failure_degrades_to_vector(indexed_store, make_retriever) -> None:
    store = ScriptedStore(indexed_store, keyword_error=RuntimeError("index offline"))

    result = make_retriever(store).retrieve(QUERY, 4)

    assert result.degraded
    assert [(d.branch, d.reason) for d in result.degradations] == [("keyword", "RuntimeError: index offline")]
    assert result.vector_hits
    assert list(result.rankings()) == ["vector"]


def test_both_failures_raise(indexed_store, make_retriever) -> None:
    store = ScriptedStore(
        indexed_store,
        vector_error=RuntimeError("vector down"),
        keyword_error=RuntimeError("keyword down"),
    )

    with pytest.raises(RetrievalError) as exc_info:
        make_retriever(store).retrieve(QUERY, 4)

    assert {d.branch for d in exc_info.value.degradations} == {"vector", "keyword"}


def test_slow_branch_times_out(indexed_store, make_retriever) -> None:
    release = threading.Event()
    store = ScriptedStore(indexed_store, keyword_block=release)
    try:
        started = time.monotonic()
        result = make_retriever(store, keyword_timeout=0.1).retrieve(QUERY, 4)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert [(d.branch, d.reason) for d in result.degradations] == [("keyword", "timeout after 0.1s")]
    assert result.vector_hits
    assert elapsed < 3.0


class StallingKeywordStore(ScriptedStore):
    def __init__(self, inner, release, stalls):
        super().__init__(inner)
        self.release = release
        self.stalls = stalls

    def keyword_search(self, query, limit, filters=None):
        self.keyword_queries.append(query)
        if len(self.keyword_queries) <= self.stalls:
            self.release.wait(5.0)
        return self.inner.keyword_search(query, limit, filters)


def test_hung_branches_do_not_starve_later_queries(indexed_store, make_retriever) -> None:
    release = threading.Event()
    store = StallingKeywordStore(indexed_store, release, stalls=2)
    retriever = make_retriever(store, keyword_timeout=0.2, vector_timeout=1.0, executor_max_workers=2)
    try:
        first = retriever.retrieve(QUERY, 4)
        second = retriever.retrieve(QUERY, 4)
        third = retriever.retrieve(QUERY, 4)
    finally:
        release.set()

    assert [d.reason for d in first.degradations] == ["timeout after 0.2s"]
    assert [d.reason for d in second.degradations] == ["timeout after 0.2s"]
    assert not third.degraded
    assert third.vector_hits and third.keyword_hits


def test_cancellation_aborts_the_join(indexed_store, make_retriever) -> None:
    release = threading.Event()
    store = ScriptedStore(indexed_store, vector_block=release)
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    try:
        started = time.monotonic()
        with pytest.raises(OperationCancelled):
            make_retriever(store).retrieve(QUERY, 4, cancel_token=token)
        assert time.monotonic() - started < 3.0
    finally:
        release.set()
        timer.cancel()


def test_query_embedding_dimension_mismatch_degrades_vector(indexed_store, make_retriever) -> None:
    class WrongSizeProvider(HashEmbeddingProvider):
        def embed(self, texts, *, input_type="document"):
            return [vector[:4] for vector in super().embed(texts, input_type=input_type)]

    provider = WrongSizeProvider(dimensions=32)

    result = make_retriever(indexed_store, provider=provider).retrieve(QUERY, 4)

    assert [d.branch for d in result.degradations] == ["vector"]
    assert result.degradations[0].reason.startswith("PermanentInputError")
    assert result.keyword_hits


def test_keyword_branch_uses_expanded_query(indexed_store, make_retriever) -> None:
    store = ScriptedStore(indexed_store)

    make_retriever(store).retrieve("primary node", 2)

    assert store.keyword_queries == ["primary node leader"]


def test_filters_reach_both_branches(indexed_store, make_retriever) -> None:
    result = make_retriever(indexed_store).retrieve(QUERY, 4, filters={"product": "compass"})

    assert result.vector_hits == []
    assert result.keyword_hits == []
    assert not result.degraded


def test_fetch_k_is_capped(indexed_store, make_retriever) -> None:
    retriever = make_retriever(indexed_store, overfetch_factor=2.5, candidate_cap=20)

    assert retriever.fetch_k(3) == 8
    assert retriever.fetch_k(100) == 20
    with pytest.raises(ValueError):
        retriever.fetch_k(0)


def test_query_expander() -> None:
    expander = QueryExpander({"DB": ["database", "db"]})

    assert expander.enabled
    assert expander.expand("db index") == "db index database"
    assert expander.expand("unrelated") == "unrelated"
    assert not QueryExpander().enabled
