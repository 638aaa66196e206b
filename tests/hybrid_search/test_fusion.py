"""Reciprocal Rank Fusion ordering, weighting, and determinism."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from SemanticDocs.HybridSearch.fusion import ReciprocalRankFusion, fusion_rank_of
from SemanticDocs.HybridSearch.types import RetrievalHit


def ranked(source: str, *chunk_ids: str) -> list[RetrievalHit]:
    return [
        RetrievalHit(chunk_id=chunk_id, raw_score=1.0 / rank, rank=rank, source=source)  # type: ignore[arg-type]
        for rank, chunk_id in enumerate(chunk_ids, start=1)
    ]


def test_two_list_example() -> None:
    fusion = ReciprocalRankFusion(k=60.0)

    fused = fusion.fuse({"vector": ranked("vector", "A", "B", "C"), "keyword": ranked("keyword", "B", "A", "D")})

    assert [candidate.chunk_id for candidate in fused] == ["A", "B", "C", "D"]
    assert fused[0].fusion_score == pytest.approx(1 / 61 + 1 / 62)
    assert fused[0].fusion_score == fused[1].fusion_score
    assert fused[2].fusion_score == pytest.approx(1 / 63)
    assert fused[0].contributing_ranks == {"vector": 1, "keyword": 2}
    assert fused[3].contributing_ranks == {"keyword": 3}


def test_channel_weights_shift_the_order() -> None:
    fusion = ReciprocalRankFusion(k=60.0, channel_weights={"vector": 1.0, "keyword": 2.0})

    fused = fusion.fuse({"vector": ranked("vector", "A", "B"), "keyword": ranked("keyword", "B", "A")})

    assert [candidate.chunk_id for candidate in fused] == ["B", "A"]
    assert fused[0].fusion_score == pytest.approx(1 / 62 + 2 / 61)


def test_duplicate_hits_use_best_rank() -> None:
    hits = ranked("vector", "A", "B", "A")

    fused = ReciprocalRankFusion(k=60.0).fuse({"vector": hits})

    assert [candidate.chunk_id for candidate in fused] == ["A", "B"]
    assert fused[0].fusion_score == pytest.approx(1 / 61)


def test_sequence_input_reads_source_from_hits() -> None:
    fusion = ReciprocalRankFusion(k=60.0)

    fused = fusion.fuse([ranked("vector", "A"), ranked("keyword", "A")])

    assert fused[0].contributing_ranks == {"vector": 1, "keyword": 1}
    assert fusion.scores([ranked("vector", "A")]) == {"A": pytest.approx(1 / 61)}


def test_empty_and_single_list() -> None:
    fusion = ReciprocalRankFusion()

    assert fusion.fuse({}) == []
    assert fusion.fuse({"vector": []}) == []
    assert [c.chunk_id for c in fusion.fuse({"vector": ranked("vector", "Z", "Y")})] == ["Z", "Y"]


def test_invalid_parameters() -> None:
    with pytest.raises(ValueError):
        ReciprocalRankFusion(k=0)
    with pytest.raises(ValueError):
        ReciprocalRankFusion().contribution("vector", 0)


def test_fusion_rank_of_is_one_based() -> None:
    fused = ReciprocalRankFusion().fuse({"vector": ranked("vector", "A", "B")})

    assert fusion_rank_of(fused) == {"A": 1, "B": 2}


CHUNK_IDS = st.lists(st.sampled_from([f"c{i}" for i in range(12)]), unique=True, max_size=10)


@settings(max_examples=100, deadline=None)
@given(vector_ids=CHUNK_IDS, keyword_ids=CHUNK_IDS, k=st.floats(min_value=1.0, max_value=200.0))
def test_fusion_is_deterministic_and_order_independent(vector_ids, keyword_ids, k) -> None:
    fusion = ReciprocalRankFusion(k=k)
    vector = ranked("vector", *vector_ids)
    keyword = ranked("keyword", *keyword_ids)

    forward = fusion.fuse({"vector": vector, "keyword": keyword})
    backward = fusion.fuse({"keyword": keyword, "vector": vector})

    assert [(c.chunk_id, c.fusion_score) for c in forward] == [(c.chunk_id, c.fusion_score) for c in backward]
    assert {c.chunk_id for c in forward} == set(vector_ids) | set(keyword_ids)
    keys = [(-c.fusion_score, c.chunk_id) for c in forward]
    assert keys == sorted(keys)
