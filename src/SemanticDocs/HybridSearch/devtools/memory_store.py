"""In-memory search store with brute-force cosine and Okapi BM25 retrieval.

The store implements :class:`~SemanticDocs.HybridSearch.interfaces.SearchStore`
and keeps everything in process. ``save``/``load`` persist a JSON snapshot so
the CLI can index and search across invocations without external services.
"""

from __future__ import annotations

import json
import math
import threading
from collections import Counter
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..tokenization import tokenize
from ..types import StoredChunk

__all__ = ("InMemorySearchStore", "matches_filters")

_SNAPSHOT_VERSION = 1


def matches_filters(chunk: StoredChunk, filters: Optional[Mapping[str, str]]) -> bool:
    """Return ``True`` when every filter equals the chunk's document metadata value."""

    if not filters:
        return True
    metadata = chunk.metadata.to_dict()
    return all(metadata.get(key) == value for key, value in filters.items())


class InMemorySearchStore:
    """Thread-safe in-memory :class:`SearchStore`.

    Attributes:
        _chunks: Stored chunks keyed by chunk id.
        _terms: Token frequencies per chunk, used for BM25.
        _df: Document frequency per token across stored chunks.
        _avg_length: Average token length across stored chunks.

    Examples:
        >>> store = InMemorySearchStore()
        >>> store.stats()["chunks"]
        0
    """

    def __init__(self, *, k1: float = 1.2, b: float = 0.75) -> None:
        self._lock = threading.RLock()
        self._chunks: Dict[str, StoredChunk] = {}
        self._terms: Dict[str, Counter[str]] = {}
        self._df: Dict[str, int] = {}
        self._avg_length = 0.0
        self._k1 = k1
        self._b = b
        self.closed = False

    # --- SearchStore protocol ---

    def upsert(self, chunks: Sequence[StoredChunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._remove(chunk.chunk_id)
                terms = Counter(tokenize(chunk.text))
                self._chunks[chunk.chunk_id] = chunk
                self._terms[chunk.chunk_id] = terms
                for token in terms:
                    self._df[token] = self._df.get(token, 0) + 1
            self._recompute_avg_length()

    def delete(self, chunk_ids: Sequence[str]) -> None:
        with self._lock:
            for chunk_id in chunk_ids:
                self._remove(chunk_id)
            self._recompute_avg_length()

    def get(self, doc_id: str) -> List[StoredChunk]:
        with self._lock:
            chunks = [chunk for chunk in self._chunks.values() if chunk.doc_id == doc_id]
        return sorted(chunks, key=lambda chunk: chunk.index)

    def document_ids(self) -> List[str]:
        with self._lock:
            return sorted({chunk.doc_id for chunk in self._chunks.values()})

    def vector_search(
        self,
        vector: np.ndarray,
        limit: int,
        filters: Optional[Mapping[str, str]] = None,
    ) -> List[Tuple[StoredChunk, float]]:
        with self._lock:
            candidates = [chunk for chunk in self._chunks.values() if matches_filters(chunk, filters)]
        if not candidates or limit <= 0:
            return []
        query = np.asarray(vector, dtype=np.float32).reshape(-1)
        query_norm = float(np.linalg.norm(query))
        matrix = np.stack([chunk.vector.astype(np.float32, copy=False) for chunk in candidates])
        if matrix.shape[1] != query.shape[0]:
            raise ValueError(
                f"query vector has dimension {query.shape[0]}, store holds {matrix.shape[1]}"
            )
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = 1.0
        sims = (matrix @ query) / (norms * (query_norm if query_norm > 0.0 else 1.0))
        scored = [(chunk, float(score)) for chunk, score in zip(candidates, sims)]
        scored.sort(key=lambda item: (-item[1], item[0].chunk_id))
        return scored[:limit]

    def keyword_search(
        self,
        query: str,
        limit: int,
        filters: Optional[Mapping[str, str]] = None,
    ) -> List[Tuple[StoredChunk, float]]:
        terms = list(dict.fromkeys(tokenize(query)))
        if not terms or limit <= 0:
            return []
        with self._lock:
            candidates = [chunk for chunk in self._chunks.values() if matches_filters(chunk, filters)]
            total = max(1, len(self._chunks))
            avgdl = self._avg_length if self._avg_length > 0.0 else 1.0
            scored: List[Tuple[StoredChunk, float]] = []
            for chunk in candidates:
                score = self._bm25(chunk, terms, total, avgdl)
                if score > 0.0:
                    scored.append((chunk, score))
        scored.sort(key=lambda item: (-item[1], item[0].chunk_id))
        return scored[:limit]

    def stats(self) -> Mapping[str, object]:
        with self._lock:
            chunks = list(self._chunks.values())
        return {
            "chunks": len(chunks),
            "documents": len({chunk.doc_id for chunk in chunks}),
            "products": sorted({chunk.metadata.product for chunk in chunks}),
            "versions": sorted({chunk.metadata.version for chunk in chunks if chunk.metadata.version}),
            "avg_chunk_tokens": round(self._avg_length, 3),
        }

    def close(self) -> None:
        self.closed = True

    # --- Snapshots ---

    def save(self, path: Path) -> None:
        """Write a JSON snapshot of every stored chunk to ``path``."""

        with self._lock:
            payload = {
                "version": _SNAPSHOT_VERSION,
                "chunks": [self._chunks[key].to_dict() for key in sorted(self._chunks)],
            }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload), encoding="utf-8")
        tmp_path.replace(path)

    @classmethod
    def load(cls, path: Path) -> "InMemorySearchStore":
        """Restore a store from ``path``; a missing file yields an empty store.

        Raises:
            ValueError: If the snapshot is not valid JSON or has an unknown version.
        """

        store = cls()
        if not path.exists():
            return store
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Store snapshot {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, Mapping) or payload.get("version") != _SNAPSHOT_VERSION:
            raise ValueError(f"Store snapshot {path} has an unsupported format")
        store.upsert([StoredChunk.from_dict(item) for item in payload.get("chunks", [])])
        return store

    # --- Internals ---

    def _bm25(self, chunk: StoredChunk, terms: Sequence[str], total: int, avgdl: float) -> float:
        frequencies = self._terms[chunk.chunk_id]
        length = max(1.0, float(sum(frequencies.values())))
        score = 0.0
        for token in terms:
            tf = float(frequencies.get(token, 0))
            if tf <= 0.0:
                continue
            df = self._df.get(token, 0)
            idf = math.log((total - df + 0.5) / (df + 0.5) + 1.0)
            denom = tf + self._k1 * (1.0 - self._b + self._b * (length / avgdl))
            score += idf * (tf * (self._k1 + 1.0)) / denom
        return float(score)

    def _remove(self, chunk_id: str) -> None:
        if self._chunks.pop(chunk_id, None) is None:
            return
        for token in self._terms.pop(chunk_id, Counter()):
            current = self._df.get(token, 0)
            if current <= 1:
                self._df.pop(token, None)
            else:
                self._df[token] = current - 1

    def _recompute_avg_length(self) -> None:
        if not self._terms:
            self._avg_length = 0.0
            return
        total = sum(sum(terms.values()) for terms in self._terms.values())
        self._avg_length = total / len(self._terms)

    def __enter__(self) -> "InMemorySearchStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
