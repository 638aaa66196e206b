"""Maximal marginal relevance selection over fused candidates."""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence

import numpy as np

from .types import FusedCandidate

__all__ = ("MaximalMarginalRelevance", "cosine_similarity_matrix")


def cosine_similarity_matrix(vectors: Sequence[Optional[np.ndarray]]) -> np.ndarray:
    """Pairwise cosine similarities; rows for missing or zero vectors are all zero."""

    size = len(vectors)
    if size == 0:
        return np.zeros((0, 0), dtype=np.float32)
    dims = next((v.shape[-1] for v in vectors if v is not None), 0)
    matrix = np.zeros((size, max(dims, 1)), dtype=np.float32)
    for row, vector in enumerate(vectors):
        if vector is not None and vector.shape[-1] == dims:
            matrix[row] = vector.astype(np.float32, copy=False).reshape(-1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    normalised = matrix / norms
    return (normalised @ normalised.T).astype(np.float32, copy=False)


class MaximalMarginalRelevance:
    """Greedy relevance/diversity trade-off over the head of a fused ranking.

    At each step the remaining candidate maximising
    ``λ · relevance − (1 − λ) · max_similarity(selected)`` is taken.
    Relevance is scaled by the pool maximum so it shares the ``[0, 1]``
    range of cosine similarity. Ties keep the earlier fusion rank.

    Examples:
        >>> selector = MaximalMarginalRelevance(lambda_param=1.0, fetch_k=10)
        >>> selector.select([], target_size=5)
        []
    """

    def __init__(self, lambda_param: float = 0.7, fetch_k: int = 50) -> None:
        if not 0.0 <= lambda_param <= 1.0:
            raise ValueError("lambda_param must be within [0, 1]")
        if fetch_k <= 0:
            raise ValueError("fetch_k must be positive")
        self._lambda = float(lambda_param)
        self._fetch_k = int(fetch_k)

    @property
    def lambda_param(self) -> float:
        return self._lambda

    @property
    def fetch_k(self) -> int:
        return self._fetch_k

    def select(
        self,
        candidates: Sequence[FusedCandidate],
        target_size: int,
        vectors: Optional[Mapping[str, np.ndarray]] = None,
        relevance: Optional[Mapping[str, float]] = None,
    ) -> List[FusedCandidate]:
        """Select up to ``target_size`` diversified candidates.

        Args:
            candidates: Fused candidates, best first.
            target_size: Desired output size.
            vectors: Optional vectors keyed by chunk id; defaults to the
                stored vectors carried on each candidate.
            relevance: Optional relevance override keyed by chunk id (for
                example rerank scores); defaults to ``fusion_score``.

        Returns:
            At most ``min(target_size, fetch_k, len(candidates))`` distinct
            candidates in selection order.
        """

        if target_size <= 0 or not candidates:
            return []
        pool: List[FusedCandidate] = []
        seen: set[str] = set()
        for candidate in candidates:
            if candidate.chunk_id in seen:
                continue
            seen.add(candidate.chunk_id)
            pool.append(candidate)
            if len(pool) >= self._fetch_k:
                break
        wanted = min(target_size, len(pool))

        raw = np.array(
            [
                float(relevance.get(c.chunk_id, 0.0)) if relevance is not None else c.fusion_score
                for c in pool
            ],
            dtype=np.float64,
        )
        peak = float(raw.max())
        scaled = raw / peak if peak > 0 else raw
        if self._lambda == 1.0:
            order = sorted(range(len(pool)), key=lambda idx: (-scaled[idx], idx))
            return [pool[idx] for idx in order[:wanted]]

        pool_vectors = [
            vectors.get(c.chunk_id) if vectors is not None else (c.stored.vector if c.stored else None)
            for c in pool
        ]
        sims = cosine_similarity_matrix(pool_vectors)

        remaining = list(range(len(pool)))
        selected: List[int] = []
        while remaining and len(selected) < wanted:
            best_idx: Optional[int] = None
            best_score = float("-inf")
            for idx in remaining:
                penalty = float(sims[idx, selected].max()) if selected else 0.0
                score = self._lambda * scaled[idx] - (1.0 - self._lambda) * penalty
                if score > best_score:
                    best_idx = idx
                    best_score = score
            if best_idx is None:
                break
            selected.append(best_idx)
            remaining.remove(best_idx)
        return [pool[idx] for idx in selected]
