"""
Pytest Configuration

Shared fixtures for the SemanticDocs suite: sample markdown documents, fast
configurations (no pacing, no backoff), the deterministic hash embedding
provider, and an in-memory search store.
"""

from __future__ import annotations

import logging
import textwrap
from typing import Callable, Optional

import pytest

from SemanticDocs.HybridSearch.config import (
    EmbeddingConfig,
    FusionConfig,
    HybridSearchConfig,
    RerankConfig,
    RetrievalConfig,
)
from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider, InMemorySearchStore
from SemanticDocs.HybridSearch.embedding import EmbeddingBatcher
from SemanticDocs.HybridSearch.pipeline import IndexingPipeline
from SemanticDocs.HybridSearch.types import SourceDocument

DIMENSIONS = 32

SAMPLE_GUIDE = textwrap.dedent(
    """\
    # Replication Guide

    Replica sets keep multiple copies of your data on different servers.
    Each replica set has one primary and several secondaries.

    ## Elections

    When the primary becomes unavailable an election chooses a new primary.
    Elections usually complete within a few seconds.

    ## Read Preference

    Read preference controls which members serve read operations.

    ```python
    client = MongoClient(read_preference=ReadPreference.SECONDARY)
    ```

    Use secondary reads for analytics workloads only.
    """
)

SAMPLE_INDEXES = textwrap.dedent(
    """\
    # Index Methods

    The createIndex method builds an index on a collection field.
    Compound indexes cover queries on several fields at once.

    ## Dropping Indexes

    The dropIndex command removes an index by name.
    """
)


@pytest.fixture
def make_document() -> Callable[..., SourceDocument]:
    """Factory for :class:`SourceDocument` instances with sensible defaults."""

    def _make(
        doc_id: str,
        text: str,
        *,
        product: str = "atlas",
        version: Optional[str] = "7.0",
    ) -> SourceDocument:
        return SourceDocument(
            doc_id=doc_id,
            path=f"docs/{doc_id}",
            text=text,
            product=product,
            version=version,
        )

    return _make


@pytest.fixture
def sample_documents(make_document) -> list[SourceDocument]:
    return [
        make_document("replication.md", SAMPLE_GUIDE),
        make_document("indexes.md", SAMPLE_INDEXES),
    ]


@pytest.fixture
def hash_provider() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(dimensions=DIMENSIONS)


@pytest.fixture
def memory_store() -> InMemorySearchStore:
    return InMemorySearchStore()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Embedding settings without pacing or backoff so tests run instantly."""

    return EmbeddingConfig(
        model="hash-embedding-v1",
        dimensions=DIMENSIONS,
        max_batch_size=8,
        max_batch_tokens=4000,
        min_request_interval_ms=0,
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        parallelism=2,
    )


@pytest.fixture
def fast_config(embedding_config) -> HybridSearchConfig:
    return HybridSearchConfig(
        embedding=embedding_config,
        retrieval=RetrievalConfig(vector_timeout=5.0, keyword_timeout=5.0),
        fusion=FusionConfig(max_chunks_per_doc=0),
        rerank=RerankConfig(timeout=2.0),
    )


@pytest.fixture
def indexed_store(memory_store, hash_provider, embedding_config, sample_documents) -> InMemorySearchStore:
    """In-memory store holding the sample documents, indexed with the hash provider."""

    batcher = EmbeddingBatcher(hash_provider, embedding_config)
    try:
        summary = IndexingPipeline(memory_store, batcher).index_documents(sample_documents)
    finally:
        batcher.close()
    assert summary.succeeded
    return memory_store


@pytest.fixture(autouse=True)
def _reset_semanticdocs_logger():
    """Undo ``setup_logging`` side effects so caplog keeps seeing package records."""

    yield
    logger = logging.getLogger("SemanticDocs")
    for handler in list(logger.handlers):
        if getattr(handler, "_semanticdocs_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
