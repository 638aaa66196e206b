"""Deterministic offline embedding provider used by tests and the ``--offline`` CLI."""

from __future__ import annotations

import hashlib
import threading
from typing import List, Sequence

import numpy as np
from numpy.typing import NDArray

from ..interfaces import InputType
from ..tokenization import tokenize

__all__ = ("HashEmbeddingProvider",)


class HashEmbeddingProvider:
    """Embed text as the normalised sum of sha256-hashed token vectors.

    Texts sharing tokens land close together in cosine space, which is all the
    offline harness needs. The provider counts calls so tests can assert on
    batching behaviour.

    Examples:
        >>> provider = HashEmbeddingProvider(dimensions=8)
        >>> len(provider.embed(["hello world"])[0])
        8
    """

    def __init__(self, *, dimensions: int = 256, model: str = "hash-embedding-v1") -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions
        self._model = model
        self._lock = threading.Lock()
        self.calls: List[int] = []

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, texts: Sequence[str], *, input_type: InputType = "document") -> List[Sequence[float]]:
        with self._lock:
            self.calls.append(len(texts))
        return [self.vector_for(text) for text in texts]

    def vector_for(self, text: str) -> NDArray[np.float32]:
        tokens = tokenize(text)
        aggregate = np.zeros(self._dimensions, dtype=np.float32)
        for token in tokens:
            aggregate += self._hash_to_vector(token)
        norm = np.linalg.norm(aggregate)
        if norm == 0.0:
            # Empty text still needs a finite, non-degenerate vector.
            aggregate[0] = 1.0
            return aggregate
        return aggregate / norm

    def _hash_to_vector(self, token: str) -> NDArray[np.float32]:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        chunk = np.frombuffer(digest, dtype=np.uint8)
        repeat = int(np.ceil(self._dimensions / chunk.size))
        tiled = np.tile(chunk, repeat)[: self._dimensions]
        return tiled.astype(np.float32) / 255.0 - 0.5

    def close(self) -> None:
        return None

    def __enter__(self) -> "HashEmbeddingProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
