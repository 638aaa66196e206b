"""Reciprocal Rank Fusion over the ranked lists of the retrieval branches."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Mapping, Sequence, Union

from .types import FusedCandidate, RetrievalHit, StoredChunk

# --- Globals ---

__all__ = ("ReciprocalRankFusion", "fusion_rank_of")

Rankings = Union[Mapping[str, Sequence[RetrievalHit]], Sequence[Sequence[RetrievalHit]]]


# --- Public Classes ---

class ReciprocalRankFusion:
    """Combine ranked lists using Reciprocal Rank Fusion.

    Each chunk scores ``Σ weight(source) / (k + rank)`` over the lists it
    appears in. Ranks are 1-based; raw scores are ignored, so cosine
    similarities and BM25 scores need no calibration against each other.
    Output is ordered by ``(-score, chunk_id)``.

    Attributes:
        _k: Smoothing constant added to ranks before inversion.
        _w: Optional per-source weights (missing sources weigh 1.0).

    Examples:
        >>> fusion = ReciprocalRankFusion(k=60.0)
        >>> fusion.fuse({})
        []
    """

    def __init__(self, k: float = 60.0, *, channel_weights: Mapping[str, float] | None = None) -> None:
        if k <= 0:
            raise ValueError("k must be positive")
        self._k = float(k)
        self._w = dict(channel_weights or {})

    @property
    def k(self) -> float:
        return self._k

    def contribution(self, source: str, rank: int) -> float:
        """Score contributed by one appearance at 1-based ``rank`` in ``source``."""
        if rank < 1:
            raise ValueError("rank must be 1-based")
        return float(self._w.get(source, 1.0)) / (self._k + rank)

    def fuse(self, rankings: Rankings) -> List[FusedCandidate]:
        """Fuse ranked hit lists into a single deterministic candidate ordering.

        Args:
            rankings: Hit lists keyed by source name, or a plain sequence of
                hit lists (the source is then read from each hit).

        Returns:
            Every chunk appearing in any list, best first.
        """

        if isinstance(rankings, Mapping):
            lists = list(rankings.items())
        else:
            lists = [(hits[0].source if hits else str(i), hits) for i, hits in enumerate(rankings)]

        scores: Dict[str, float] = defaultdict(float)
        ranks: Dict[str, Dict[str, int]] = defaultdict(dict)
        stored: Dict[str, StoredChunk] = {}
        for source, hits in lists:
            best: Dict[str, int] = {}
            for position, hit in enumerate(hits, start=1):
                rank = hit.rank if hit.rank > 0 else position
                if hit.chunk_id not in best or rank < best[hit.chunk_id]:
                    best[hit.chunk_id] = rank
                if hit.stored is not None and hit.chunk_id not in stored:
                    stored[hit.chunk_id] = hit.stored
            for chunk_id, rank in best.items():
                scores[chunk_id] += self.contribution(source, rank)
                ranks[chunk_id][source] = rank

        ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [
            FusedCandidate(
                chunk_id=chunk_id,
                fusion_score=score,
                contributing_ranks=dict(ranks[chunk_id]),
                stored=stored.get(chunk_id),
            )
            for chunk_id, score in ordered
        ]

    def scores(self, rankings: Rankings) -> Dict[str, float]:
        """Return only the fused scores keyed by chunk id."""
        return {candidate.chunk_id: candidate.fusion_score for candidate in self.fuse(rankings)}


def fusion_rank_of(candidates: Sequence[FusedCandidate]) -> Dict[str, int]:
    """Map chunk ids to their 1-based position in ``candidates``."""
    return {candidate.chunk_id: position for position, candidate in enumerate(candidates, start=1)}

