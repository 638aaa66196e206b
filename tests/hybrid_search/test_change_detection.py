"""Fingerprint-based change detection between chunking passes."""

from __future__ import annotations

import pytest

from SemanticDocs.HybridSearch.changes import ChangeDetector, fingerprint, normalize_text
from SemanticDocs.HybridSearch.chunking import Chunker
from SemanticDocs.HybridSearch.types import EmbeddingRecord


def _five_sections(edited: bool = False, count: int = 5, tail: str = "end") -> str:
    parts = []
    for i in range(count):
        lead = "edited" if edited and i == 2 else "section"
        last = tail if i == 2 else "end"
        terms = " ".join(f"term{i}x{j}" for j in range(10))
        parts.append(f"## Part {i}\n\n{lead}{i} {terms} {last}\n\n")
    return "".join(parts)


def _records(chunks, provider):
    return [
        EmbeddingRecord.create(
            chunk,
            provider.vector_for(chunk.text),
            model=provider.model,
            dimensions=provider.dimensions,
        )
        for chunk in chunks
    ]


@pytest.fixture
def chunker() -> Chunker:
    return Chunker(max_tokens=64, overlap=5)


def test_fingerprint_ignores_whitespace_and_compatibility_forms() -> None:
    assert fingerprint("a  b\n") == fingerprint("a b")
    assert fingerprint("ﬁle") == fingerprint("file")
    assert fingerprint("a b") != fingerprint("a c")
    assert normalize_text("  x \t y  ") == "x y"


def test_unchanged_document_is_a_noop(chunker, hash_provider) -> None:
    chunks = chunker.chunk_text("guide.md", _five_sections())
    prior = _records(chunks, hash_provider)

    changes = ChangeDetector().classify(chunker.chunk_text("guide.md", _five_sections()), prior)

    assert changes.is_noop
    assert changes.to_embed == []
    assert len(changes.to_keep) == 5


def test_editing_one_chunk_marks_only_that_chunk_changed(chunker, hash_provider) -> None:
    prior = _records(chunker.chunk_text("guide.md", _five_sections()), hash_provider)
    edited = chunker.chunk_text("guide.md", _five_sections(edited=True))

    changes = ChangeDetector().classify(edited, prior)

    assert [chunk.index for chunk in changes.changed] == [2]
    assert [chunk.index for chunk in changes.unchanged] == [0, 1, 3, 4]
    assert changes.new == []
    assert changes.deleted == []
    assert [chunk.index for chunk in changes.to_embed] == [2]


def test_edit_inside_next_chunks_overlap_changes_one_chunk(chunker, hash_provider) -> None:
    original = chunker.chunk_text("guide.md", _five_sections())
    prior = _records(original, hash_provider)
    edited = chunker.chunk_text("guide.md", _five_sections(tail="finish"))
    assert edited[3].text != original[3].text

    changes = ChangeDetector().classify(edited, prior)

    assert [chunk.index for chunk in changes.changed] == [2]
    assert [chunk.index for chunk in changes.unchanged] == [0, 1, 3, 4]


def test_shrinking_and_growing_documents(chunker, hash_provider) -> None:
    prior = _records(chunker.chunk_text("guide.md", _five_sections()), hash_provider)
    detector = ChangeDetector()

    shrunk = detector.classify(chunker.chunk_text("guide.md", _five_sections(count=3)), prior)
    assert shrunk.deleted == ["guide.md::chunk::3", "guide.md::chunk::4"]
    assert len(shrunk.unchanged) == 3

    grown = detector.classify(chunker.chunk_text("guide.md", _five_sections(count=6)), prior)
    assert [chunk.index for chunk in grown.new] == [5]
    assert grown.deleted == []


def test_buckets_are_disjoint(chunker, hash_provider) -> None:
    prior = _records(chunker.chunk_text("guide.md", _five_sections()), hash_provider)

    changes = ChangeDetector().classify(chunker.chunk_text("guide.md", _five_sections(edited=True, count=4)), prior)

    embed_ids = {chunk.chunk_id for chunk in changes.to_embed}
    keep_ids = {chunk.chunk_id for chunk in changes.to_keep}
    delete_ids = set(changes.to_delete)
    assert not embed_ids & keep_ids
    assert not embed_ids & delete_ids
    assert not keep_ids & delete_ids
    assert len(embed_ids | keep_ids | delete_ids) == 5


def test_classify_removed_deletes_every_record(chunker, hash_provider) -> None:
    prior = _records(chunker.chunk_text("guide.md", _five_sections()), hash_provider)

    changes = ChangeDetector().classify_removed(reversed(prior))

    assert changes.deleted == [f"guide.md::chunk::{i}" for i in range(5)]


def test_classify_rejects_mixed_documents(chunker, hash_provider) -> None:
    first = chunker.chunk_text("a.md", "alpha beta")
    second = chunker.chunk_text("b.md", "gamma delta")
    detector = ChangeDetector()

    with pytest.raises(ValueError):
        detector.classify(first + second, [])
    with pytest.raises(ValueError):
        detector.classify(first, _records(second, hash_provider))
