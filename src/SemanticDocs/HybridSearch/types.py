"""
Core typed structures for hybrid search components.

This module defines the data shapes exchanged between the indexing and query
halves of SemanticDocs: source documents, chunks, embedding records, the
persisted chunk unit, per-query hits and candidates, and the summaries
returned to callers. Chunk metadata is a closed schema; anything the pipeline
never reads travels in an explicit ``extensions`` mapping.

Lifecycle:
- Indexing: ``SourceDocument`` -> ``Chunk`` -> ``EmbeddingRecord`` ->
  ``StoredChunk`` (persisted by the search store).
- Query: ``SearchRequest`` -> ``RetrievalHit`` -> ``FusedCandidate`` ->
  ``RankedResult`` inside a ``SearchResponse``. Nothing on this path is
  cached across queries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import PartialRetrievalDegradation, PermanentInputError

__all__ = (
    "BatchOutcome",
    "ChangeSet",
    "Chunk",
    "ChunkFailure",
    "ContentType",
    "DocumentFailure",
    "DocumentMetadata",
    "EmbeddingOutcome",
    "EmbeddingRecord",
    "FusedCandidate",
    "IndexSummary",
    "RankedResult",
    "RerankOutcome",
    "RetrievalHit",
    "RetrievalResult",
    "RetrievalSource",
    "SearchRequest",
    "SearchResponse",
    "SourceDocument",
    "StoredChunk",
    "make_chunk_id",
    "parse_chunk_id",
)

ContentType = Literal["technical", "conceptual", "meta", "general"]
RetrievalSource = Literal["vector", "keyword"]

_CHUNK_ID_SEPARATOR = "::chunk::"


def make_chunk_id(doc_id: str, index: int) -> str:
    """Return the stable identifier for chunk ``index`` of ``doc_id``."""

    return f"{doc_id}{_CHUNK_ID_SEPARATOR}{index}"


def parse_chunk_id(chunk_id: str) -> Tuple[str, int]:
    """Split a chunk identifier back into ``(doc_id, index)``.

    Raises:
        ValueError: If ``chunk_id`` was not produced by :func:`make_chunk_id`.
    """

    doc_id, sep, index = chunk_id.rpartition(_CHUNK_ID_SEPARATOR)
    if not sep or not index.isdigit():
        raise ValueError(f"malformed chunk id: {chunk_id!r}")
    return doc_id, int(index)


@dataclass(slots=True, frozen=True)
class DocumentMetadata:
    """Document-level fields copied onto every stored chunk.

    Attributes:
        product: Product tag the document belongs to (e.g. ``"atlas"``).
        version: Optional product version.
        title: Human readable document title.
        url: Canonical source URL.
        path: Source path within the corpus.

    Examples:
        >>> DocumentMetadata(product="atlas", version="7.0").to_dict()["product"]
        'atlas'
    """

    product: str
    version: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "product": self.product,
            "version": self.version,
            "title": self.title,
            "url": self.url,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DocumentMetadata":
        return cls(
            product=str(payload["product"]),
            version=payload.get("version"),
            title=payload.get("title"),
            url=payload.get("url"),
            path=payload.get("path"),
        )


@dataclass(slots=True, frozen=True)
class SourceDocument:
    """A fetched document ready for chunking.

    Instances are immutable for the duration of an indexing pass; re-fetching
    a document produces a new instance rather than mutating this one.

    Attributes:
        doc_id: Stable document identifier (usually the corpus-relative path).
        path: Path or URL the text was read from.
        text: Raw document text (markdown or plain text).
        product: Product tag used for filtering.
        version: Optional product version.
        last_modified: Optional modification timestamp reported by the source.
        title: Optional document title.
        url: Optional canonical URL.

    Examples:
        >>> doc = SourceDocument(doc_id="guide.md", path="docs/guide.md", text="# Guide", product="atlas")
        >>> doc.metadata.product
        'atlas'
    """

    doc_id: str
    path: str
    text: str
    product: str
    version: Optional[str] = None
    last_modified: Optional[datetime] = None
    title: Optional[str] = None
    url: Optional[str] = None

    @property
    def metadata(self) -> DocumentMetadata:
        """Document-level metadata persisted alongside each chunk."""
        return DocumentMetadata(
            product=self.product,
            version=self.version,
            title=self.title,
            url=self.url,
            path=self.path,
        )


@dataclass(slots=True, frozen=True)
class Chunk:
    """A bounded, contiguous slice of a document's text.

    ``text`` is ``document.text[start_char - overlap_chars:end_char]``: the
    chunk's own span prefixed by the trailing overlap tokens of the previous
    chunk. Own spans ``[start_char, end_char)`` of one document partition its
    text exactly.

    Attributes:
        doc_id: Owning document identifier.
        index: Zero-based position within the document.
        text: Chunk text including the leading overlap.
        token_count: Tokens in ``text`` (overlap included); never exceeds the
            configured maximum.
        start_char: Start of the chunk's own span in the document.
        end_char: End (exclusive) of the chunk's own span.
        overlap_chars: Length of the leading overlap prefix inside ``text``.
        fingerprint: Fingerprint of the own span used for change detection;
            the borrowed overlap is excluded so an edit near a boundary only
            changes the chunk that owns it.
        content_key: Fingerprint of the own span, used for result dedupe.
        section_title: Heading of the enclosing section, if any.
        section_level: Heading depth (1-6) of the enclosing section, if any.
        has_code: Whether the chunk contains fenced or inline code.
        is_continuation: ``True`` when the chunk continues a section started
            by an earlier chunk.
        content_type: Coarse classification of the chunk text.
        extensions: Opaque passthrough fields the pipeline never inspects.
    """

    doc_id: str
    index: int
    text: str
    token_count: int
    start_char: int
    end_char: int
    overlap_chars: int
    fingerprint: str
    content_key: str
    section_title: Optional[str] = None
    section_level: Optional[int] = None
    has_code: bool = False
    is_continuation: bool = False
    content_type: ContentType = "general"
    extensions: Mapping[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.doc_id, self.index)

    @property
    def own_text(self) -> str:
        """Chunk text without the overlap borrowed from the previous chunk."""
        return self.text[self.overlap_chars :]


@dataclass(slots=True, frozen=True)
class EmbeddingRecord:
    """Dense vector produced for one chunk.

    Attributes:
        chunk_id: Identifier of the embedded chunk.
        vector: ``float32`` vector of the configured dimensionality.
        model: Embedding model that produced the vector.
        embedded_at: UTC timestamp of creation.
        fingerprint: Chunk fingerprint at embedding time; a different
            fingerprint on a later pass marks the record stale.
    """

    chunk_id: str
    vector: NDArray[np.float32]
    model: str
    embedded_at: datetime
    fingerprint: str

    @classmethod
    def create(
        cls,
        chunk: Chunk,
        vector: Sequence[float],
        *,
        model: str,
        dimensions: int,
        embedded_at: Optional[datetime] = None,
    ) -> "EmbeddingRecord":
        """Validate ``vector`` and wrap it into a record for ``chunk``.

        Raises:
            PermanentInputError: If the vector length differs from
                ``dimensions`` or it contains non-finite values.
        """

        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != dimensions:
            raise PermanentInputError(
                f"embedding for {chunk.chunk_id} has dimension {array.shape[0]}, expected {dimensions}"
            )
        if not np.all(np.isfinite(array)):
            raise PermanentInputError(f"embedding for {chunk.chunk_id} contains non-finite values")
        return cls(
            chunk_id=chunk.chunk_id,
            vector=array,
            model=model,
            embedded_at=embedded_at or datetime.now(timezone.utc),
            fingerprint=chunk.fingerprint,
        )


@dataclass(slots=True, frozen=True)
class StoredChunk:
    """The persisted unit: embedding, chunk text, and document metadata.

    Everything needed to render a :class:`RankedResult` lives here, so a
    query never needs a second lookup.
    """

    record: EmbeddingRecord
    doc_id: str
    index: int
    text: str
    content_key: str
    token_count: int
    metadata: DocumentMetadata
    section_title: Optional[str] = None
    section_level: Optional[int] = None
    has_code: bool = False
    content_type: ContentType = "general"
    extensions: Mapping[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return self.record.chunk_id

    @property
    def fingerprint(self) -> str:
        return self.record.fingerprint

    @property
    def vector(self) -> NDArray[np.float32]:
        return self.record.vector

    @classmethod
    def from_chunk(
        cls, chunk: Chunk, record: EmbeddingRecord, metadata: DocumentMetadata
    ) -> "StoredChunk":
        if record.chunk_id != chunk.chunk_id:
            raise ValueError(f"record {record.chunk_id} does not belong to chunk {chunk.chunk_id}")
        return cls(
            record=record,
            doc_id=chunk.doc_id,
            index=chunk.index,
            text=chunk.text,
            content_key=chunk.content_key,
            token_count=chunk.token_count,
            metadata=metadata,
            section_title=chunk.section_title,
            section_level=chunk.section_level,
            has_code=chunk.has_code,
            content_type=chunk.content_type,
            extensions=dict(chunk.extensions),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a JSON-compatible mapping."""
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "index": self.index,
            "text": self.text,
            "content_key": self.content_key,
            "token_count": self.token_count,
            "section_title": self.section_title,
            "section_level": self.section_level,
            "has_code": self.has_code,
            "content_type": self.content_type,
            "extensions": dict(self.extensions),
            "metadata": self.metadata.to_dict(),
            "vector": [float(value) for value in self.record.vector],
            "model": self.record.model,
            "embedded_at": self.record.embedded_at.isoformat(),
            "fingerprint": self.record.fingerprint,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StoredChunk":
        record = EmbeddingRecord(
            chunk_id=str(payload["chunk_id"]),
            vector=np.asarray(payload["vector"], dtype=np.float32),
            model=str(payload["model"]),
            embedded_at=datetime.fromisoformat(str(payload["embedded_at"])),
            fingerprint=str(payload["fingerprint"]),
        )
        return cls(
            record=record,
            doc_id=str(payload["doc_id"]),
            index=int(payload["index"]),
            text=str(payload["text"]),
            content_key=str(payload["content_key"]),
            token_count=int(payload["token_count"]),
            metadata=DocumentMetadata.from_dict(payload["metadata"]),
            section_title=payload.get("section_title"),
            section_level=payload.get("section_level"),
            has_code=bool(payload.get("has_code", False)),
            content_type=payload.get("content_type", "general"),
            extensions=dict(payload.get("extensions") or {}),
        )


@dataclass(slots=True, frozen=True)
class RetrievalHit:
    """One ranked match from a single retrieval branch.

    Attributes:
        chunk_id: Matched chunk.
        raw_score: Branch-native score (cosine similarity or BM25).
        rank: 1-based position within the branch's result list.
        source: Branch that produced the hit.
        stored: Stored chunk returned by the store, when available.
    """

    chunk_id: str
    raw_score: float
    rank: int
    source: RetrievalSource
    stored: Optional[StoredChunk] = None


@dataclass(slots=True)
class RetrievalResult:
    """Hits from both branches plus any degradation that occurred."""

    vector_hits: List[RetrievalHit] = field(default_factory=list)
    keyword_hits: List[RetrievalHit] = field(default_factory=list)
    degradations: List[PartialRetrievalDegradation] = field(default_factory=list)
    fetch_k: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)

    def rankings(self) -> Dict[str, List[RetrievalHit]]:
        """Return the surviving branches keyed by source name."""
        failed = {degradation.branch for degradation in self.degradations}
        output: Dict[str, List[RetrievalHit]] = {}
        if "vector" not in failed:
            output["vector"] = self.vector_hits
        if "keyword" not in failed:
            output["keyword"] = self.keyword_hits
        return output


@dataclass(slots=True)
class FusedCandidate:
    """Candidate produced by rank fusion.

    Attributes:
        chunk_id: Candidate chunk.
        fusion_score: Reciprocal rank fusion score.
        contributing_ranks: Rank of the chunk in each branch it appeared in.
        stored: Stored chunk carried over from the hits, when available.
    """

    chunk_id: str
    fusion_score: float
    contributing_ranks: Dict[str, int] = field(default_factory=dict)
    stored: Optional[StoredChunk] = None


@dataclass(slots=True)
class RerankOutcome:
    """Ordering after the optional reranking stage.

    ``applied`` is ``False`` when the reranker was skipped or failed; the
    candidates are then the input ordering unchanged.
    """

    candidates: List[FusedCandidate]
    scores: Dict[str, float] = field(default_factory=dict)
    applied: bool = False
    fallback_reason: Optional[str] = None


@dataclass(slots=True)
class RankedResult:
    """Final result returned to callers.

    Attributes:
        chunk_id: Result chunk identifier.
        doc_id: Owning document identifier.
        score: Final score (rerank relevance when reranked, else fusion score).
        text: Chunk text.
        metadata: Document-level metadata of the source document.
        section_title: Section heading the chunk belongs to.
        fusion_rank: 1-based position after rank fusion.
        contributing_ranks: Branch ranks that produced the fusion score.
    """

    chunk_id: str
    doc_id: str
    score: float
    text: str
    metadata: DocumentMetadata
    section_title: Optional[str] = None
    fusion_rank: int = 0
    contributing_ranks: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "score": self.score,
            "text": self.text,
            "section_title": self.section_title,
            "fusion_rank": self.fusion_rank,
            "contributing_ranks": dict(self.contributing_ranks),
            "metadata": self.metadata.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class SearchRequest:
    """Validated search request.

    Examples:
        >>> SearchRequest(query="aggregation pipeline", limit=5, product="atlas").filters
        {'product': 'atlas'}
    """

    query: str
    limit: int = 10
    product: Optional[str] = None
    version: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.query or not self.query.strip():
            raise ValueError("query must be a non-empty string")
        if self.limit <= 0:
            raise ValueError("limit must be positive")

    @property
    def filters(self) -> Dict[str, str]:
        output: Dict[str, str] = {}
        if self.product is not None:
            output["product"] = self.product
        if self.version is not None:
            output["version"] = self.version
        return output


@dataclass(slots=True)
class SearchResponse:
    """Results of a search plus degradation and timing diagnostics."""

    results: List[RankedResult]
    degradations: List[PartialRetrievalDegradation] = field(default_factory=list)
    reranked: bool = False
    rerank_fallback_reason: Optional[str] = None
    timings_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)


@dataclass(slots=True)
class ChangeSet:
    """Classification of one document's chunks against its stored state.

    ``to_embed``, ``to_delete`` and ``to_keep`` are disjoint.
    """

    new: List[Chunk] = field(default_factory=list)
    changed: List[Chunk] = field(default_factory=list)
    unchanged: List[Chunk] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def to_embed(self) -> List[Chunk]:
        return sorted(self.new + self.changed, key=lambda chunk: chunk.index)

    @property
    def to_delete(self) -> List[str]:
        return list(self.deleted)

    @property
    def to_keep(self) -> List[Chunk]:
        return list(self.unchanged)

    @property
    def is_noop(self) -> bool:
        return not (self.new or self.changed or self.deleted)


@dataclass(slots=True, frozen=True)
class ChunkFailure:
    """A chunk that could not be embedded.

    ``reason`` is one of ``"permanent"``, ``"transient-exhausted"`` or
    ``"invalid-vector"``.
    """

    chunk_id: str
    reason: str
    detail: str = ""


@dataclass(slots=True)
class BatchOutcome:
    """Result of submitting one embedding batch."""

    batch_index: int
    chunk_ids: List[str]
    attempts: int = 0
    succeeded: int = 0
    failed: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass(slots=True)
class EmbeddingOutcome:
    """Aggregate output of :meth:`EmbeddingBatcher.embed`."""

    records: List[EmbeddingRecord] = field(default_factory=list)
    failures: List[ChunkFailure] = field(default_factory=list)
    batches: List[BatchOutcome] = field(default_factory=list)

    @property
    def embedded_count(self) -> int:
        return len(self.records)


@dataclass(slots=True, frozen=True)
class DocumentFailure:
    """A document whose indexing step failed; the run continued without it."""

    doc_id: str
    error: str


@dataclass(slots=True)
class IndexSummary:
    """Outcome of an indexing run.

    Attributes:
        documents_processed: Documents chunked and classified.
        new: Documents that had no stored chunks before the run.
        updated: Previously indexed documents with at least one change.
        deleted: Documents removed because they vanished from the corpus.
        chunks_embedded: Chunks embedded and written to the store.
        chunks_failed: Chunks that could not be embedded.
        chunks_kept: Unchanged chunks left untouched.
        chunks_deleted: Stored chunks removed.
        failures: Per-chunk embedding failures.
        document_failures: Per-document failures (store errors and the like).
        duration_ms: Wall-clock duration of the run.
        cancelled: Whether the run stopped early on cancellation.
    """

    documents_processed: int = 0
    new: int = 0
    updated: int = 0
    deleted: int = 0
    chunks_embedded: int = 0
    chunks_failed: int = 0
    chunks_kept: int = 0
    chunks_deleted: int = 0
    failures: List[ChunkFailure] = field(default_factory=list)
    document_failures: List[DocumentFailure] = field(default_factory=list)
    duration_ms: float = 0.0
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.document_failures and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documents_processed": self.documents_processed,
            "new": self.new,
            "updated": self.updated,
            "deleted": self.deleted,
            "chunks_embedded": self.chunks_embedded,
            "chunks_failed": self.chunks_failed,
            "chunks_kept": self.chunks_kept,
            "chunks_deleted": self.chunks_deleted,
            "failures": [
                {"chunk_id": failure.chunk_id, "reason": failure.reason, "detail": failure.detail}
                for failure in self.failures
            ],
            "document_failures": [
                {"doc_id": failure.doc_id, "error": failure.error}
                for failure in self.document_failures
            ],
            "duration_ms": round(self.duration_ms, 3),
            "cancelled": self.cancelled,
        }

