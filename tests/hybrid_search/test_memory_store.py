"""In-memory search store: retrieval, filters, and JSON snapshots."""

from __future__ import annotations

import numpy as np
import pytest

from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider, InMemorySearchStore


def test_vector_search_ranks_by_cosine(indexed_store) -> None:
    target = indexed_store.get("indexes.md")[0]

    results = indexed_store.vector_search(target.vector, 3)

    assert results[0][0].chunk_id == target.chunk_id
    assert results[0][1] == pytest.approx(1.0, abs=1e-5)
    scores = [score for _, score in results]
    assert scores == sorted(scores, reverse=True)


def test_vector_search_rejects_wrong_dimension(indexed_store) -> None:
    with pytest.raises(ValueError):
        indexed_store.vector_search(np.ones(3, dtype=np.float32), 3)


def test_keyword_search_only_returns_matches(indexed_store) -> None:
    results = indexed_store.keyword_search("dropIndex", 10)

    assert [chunk.doc_id for chunk, _ in results] == ["indexes.md"]
    assert indexed_store.keyword_search("zzzz", 10) == []
    assert indexed_store.keyword_search("", 10) == []


def test_filters_apply_to_document_metadata(indexed_store, hash_provider) -> None:
    vector = hash_provider.vector_for("replica")

    assert indexed_store.vector_search(vector, 10, {"product": "atlas", "version": "7.0"})
    assert indexed_store.vector_search(vector, 10, {"version": "6.0"}) == []
    assert indexed_store.keyword_search("replica", 10, {"product": "compass"}) == []


def test_delete_updates_lexical_statistics(indexed_store) -> None:
    ids = [chunk.chunk_id for chunk in indexed_store.get("indexes.md")]

    indexed_store.delete(ids + ["unknown::chunk::0"])

    assert indexed_store.keyword_search("dropIndex", 10) == []
    assert indexed_store.document_ids() == ["replication.md"]


def test_snapshot_round_trip(tmp_path, indexed_store) -> None:
    path = tmp_path / "nested" / "store.json"

    indexed_store.save(path)
    restored = InMemorySearchStore.load(path)

    assert restored.stats() == indexed_store.stats()
    original = indexed_store.get("replication.md")
    loaded = restored.get("replication.md")
    assert [c.fingerprint for c in loaded] == [c.fingerprint for c in original]
    assert np.allclose(loaded[0].vector, original[0].vector)
    assert loaded[0].metadata == original[0].metadata


def test_load_missing_and_corrupt_snapshots(tmp_path) -> None:
    assert InMemorySearchStore.load(tmp_path / "absent.json").stats()["chunks"] == 0

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json")
    with pytest.raises(ValueError):
        InMemorySearchStore.load(corrupt)

    wrong_version = tmp_path / "old.json"
    wrong_version.write_text('{"version": 99, "chunks": []}')
    with pytest.raises(ValueError):
        InMemorySearchStore.load(wrong_version)


def test_hash_provider_is_deterministic() -> None:
    provider = HashEmbeddingProvider(dimensions=16)

    first, second = provider.embed(["replica set", "replica set"])

    assert np.array_equal(first, second)
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)
    assert provider.vector_for("")[0] == 1.0
    assert provider.calls == [2]
