"""Content fingerprints and incremental change detection.

Only fingerprints take part in the comparison: no timestamps, counters, or
model names. Classifying the same chunks against the same stored state
therefore always yields the same :class:`ChangeSet`.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Dict, Iterable, Sequence, Tuple, Union

from .types import ChangeSet, Chunk, EmbeddingRecord, StoredChunk, parse_chunk_id

__all__ = ("ChangeDetector", "fingerprint", "normalize_text")

_WHITESPACE = re.compile(r"\s+")

PriorRecord = Union[StoredChunk, EmbeddingRecord]


def normalize_text(text: str) -> str:
    """NFKC-normalise ``text`` and collapse whitespace runs to single spaces."""

    return _WHITESPACE.sub(" ", unicodedata.normalize("NFKC", text)).strip()


def fingerprint(text: str) -> str:
    """Return the sha256 hex digest of the normalised ``text``.

    Examples:
        >>> fingerprint("a  b\\n") == fingerprint("a b")
        True
    """

    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


class ChangeDetector:
    """Classify freshly produced chunks against previously stored records.

    Positions are keyed by ``(doc_id, chunk index)``. Each position ends up in
    exactly one bucket: new, changed, unchanged, or deleted.

    Examples:
        >>> detector = ChangeDetector()
        >>> detector.classify([], []).is_noop
        True
    """

    def classify(self, chunks: Sequence[Chunk], prior: Iterable[PriorRecord]) -> ChangeSet:
        """Compare ``chunks`` for one document with its ``prior`` records.

        Args:
            chunks: Chunks produced for the document on this pass.
            prior: Stored chunks or embedding records for the same document.

        Returns:
            Disjoint classification of every position.

        Raises:
            ValueError: If ``chunks`` belong to more than one document or reuse
                an index, or a prior record belongs to a different document.
        """

        doc_ids = {chunk.doc_id for chunk in chunks}
        if len(doc_ids) > 1:
            raise ValueError(f"classify expects chunks from one document, got {sorted(doc_ids)}")
        current: Dict[int, Chunk] = {}
        for chunk in chunks:
            if chunk.index in current:
                raise ValueError(f"duplicate chunk index {chunk.index} for {chunk.doc_id}")
            current[chunk.index] = chunk

        previous = self._key_prior(prior)
        if doc_ids and previous:
            (doc_id,) = doc_ids
            stray = {key[0] for key in previous} - {doc_id}
            if stray:
                raise ValueError(f"prior records for {sorted(stray)} passed with chunks of {doc_id}")

        changes = ChangeSet()
        for index in sorted(current):
            chunk = current[index]
            match = previous.get((chunk.doc_id, index))
            if match is None:
                changes.new.append(chunk)
            elif match[1] != chunk.fingerprint:
                changes.changed.append(chunk)
            else:
                changes.unchanged.append(chunk)
        live = {(chunk.doc_id, chunk.index) for chunk in current.values()}
        for key in sorted(previous):
            if key not in live:
                changes.deleted.append(previous[key][0])
        return changes

    def classify_removed(self, prior: Iterable[PriorRecord]) -> ChangeSet:
        """Mark every prior record deleted (the document left the corpus)."""

        previous = self._key_prior(prior)
        return ChangeSet(deleted=[previous[key][0] for key in sorted(previous)])

    @staticmethod
    def _key_prior(prior: Iterable[PriorRecord]) -> Dict[Tuple[str, int], Tuple[str, str]]:
        keyed: Dict[Tuple[str, int], Tuple[str, str]] = {}
        for record in prior:
            key = parse_chunk_id(record.chunk_id)
            keyed[key] = (record.chunk_id, record.fingerprint)
        return keyed
