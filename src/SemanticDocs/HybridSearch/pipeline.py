"""Incremental indexing of source documents into a search store.

Each document flows through chunking, change detection against the stored
records, embedding of the new and changed chunks, and finally the store
writes. Only changed positions reach the embedding provider, so re-indexing
an untouched corpus costs nothing beyond chunking and hashing.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Literal, Optional, Sequence

from SemanticDocs.concurrency import CancellationToken

from .changes import ChangeDetector
from .chunking import Chunker, document_title
from .embedding import EmbeddingBatcher
from .errors import OperationCancelled, raise_if_cancelled
from .interfaces import SearchStore
from .observability import Observability
from .types import (
    ChangeSet,
    DocumentFailure,
    DocumentMetadata,
    IndexSummary,
    SourceDocument,
    StoredChunk,
)

__all__ = ("IndexMode", "IndexingPipeline")

logger = logging.getLogger(__name__)

IndexMode = Literal["incremental", "full"]


class IndexingPipeline:
    """Coordinate chunking, change detection, embedding, and store writes.

    Attributes:
        _store: Search store receiving upserts and deletions.
        _batcher: Embedding batcher for the chunks that need vectors.
        _chunker: Structure-aware chunker.
        _detector: Fingerprint-based change detector.
        _observability: Observability facade for tracing and metrics.

    Examples:
        >>> from SemanticDocs.HybridSearch.devtools import HashEmbeddingProvider, InMemorySearchStore
        >>> provider = HashEmbeddingProvider(dimensions=16)
        >>> pipeline = IndexingPipeline(InMemorySearchStore(), EmbeddingBatcher(provider))
        >>> pipeline.index_documents([]).documents_processed
        0
    """

    def __init__(
        self,
        store: SearchStore,
        batcher: EmbeddingBatcher,
        *,
        chunker: Optional[Chunker] = None,
        detector: Optional[ChangeDetector] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self._store = store
        self._batcher = batcher
        self._chunker = chunker or Chunker()
        self._detector = detector or ChangeDetector()
        self._observability = observability or Observability()

    def index_documents(
        self,
        documents: Iterable[SourceDocument],
        *,
        mode: IndexMode = "incremental",
        prune_missing: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> IndexSummary:
        """Index ``documents`` and report per-item outcomes.

        Args:
            documents: Documents to (re)index. Document ids must be unique.
            mode: ``"incremental"`` embeds only new and changed chunks;
                ``"full"`` re-embeds every chunk.
            prune_missing: Delete stored documents absent from ``documents``.
            cancel_token: Optional token; cancellation stops before the next
                document and nothing from the interrupted document is written.

        Returns:
            :class:`IndexSummary` with counts, failures, and duration.

        Raises:
            ValueError: If ``mode`` is unknown or a document id repeats.
        """

        if mode not in ("incremental", "full"):
            raise ValueError(f"unknown index mode {mode!r}")
        docs = list(documents)
        seen: Dict[str, SourceDocument] = {}
        for document in docs:
            if document.doc_id in seen:
                raise ValueError(f"duplicate document id {document.doc_id!r}")
            seen[document.doc_id] = document

        summary = IndexSummary()
        metrics = self._observability.metrics
        start = time.perf_counter()
        try:
            for document in docs:
                raise_if_cancelled(cancel_token, "indexing")
                with self._observability.trace("index_document", product=document.product):
                    self._index_one(document, mode, summary, cancel_token)
                summary.documents_processed += 1
            if prune_missing:
                raise_if_cancelled(cancel_token, "indexing")
                self._prune(set(seen), summary)
        except OperationCancelled:
            summary.cancelled = True
            metrics.increment("index.cancelled")
            logger.info(
                "index-cancelled",
                extra={"event": {"documents_processed": summary.documents_processed}},
            )

        summary.duration_ms = (time.perf_counter() - start) * 1000
        metrics.observe("index.duration_ms", summary.duration_ms)
        metrics.increment("index.chunks_embedded", float(summary.chunks_embedded))
        metrics.increment("index.chunks_failed", float(summary.chunks_failed))
        logger.info("index-complete", extra={"event": summary.to_dict() | {"failures": len(summary.failures)}})
        return summary

    def _index_one(
        self,
        document: SourceDocument,
        mode: IndexMode,
        summary: IndexSummary,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        try:
            chunks = self._chunker.chunk(document)
            prior = self._store.get(document.doc_id)
            changes = self._detector.classify(chunks, prior)
            if mode == "full":
                changes.changed.extend(changes.unchanged)
                changes.unchanged.clear()
            outcome = self._batcher.embed(changes.to_embed, cancel_token=cancel_token)
            raise_if_cancelled(cancel_token, "indexing")

            metadata = self._metadata_for(document)
            by_id = {chunk.chunk_id: chunk for chunk in changes.to_embed}
            stored = [
                StoredChunk.from_chunk(by_id[record.chunk_id], record, metadata)
                for record in outcome.records
            ]
            if stored:
                self._store.upsert(stored)
            if changes.to_delete:
                self._store.delete(changes.to_delete)
        except OperationCancelled:
            raise
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            summary.document_failures.append(DocumentFailure(document.doc_id, error))
            self._observability.metrics.increment("index.document_failures")
            logger.warning(
                "index-document-failed",
                exc_info=True,
                extra={"event": {"doc_id": document.doc_id, "error": error}},
            )
            return

        summary.chunks_embedded += len(stored)
        summary.chunks_failed += len(outcome.failures)
        summary.failures.extend(outcome.failures)
        summary.chunks_kept += len(changes.to_keep)
        summary.chunks_deleted += len(changes.to_delete)
        if not prior:
            if chunks:
                summary.new += 1
        elif not changes.is_noop:
            summary.updated += 1
        self._log_changes(document.doc_id, changes, len(stored))

    def _prune(self, live: set[str], summary: IndexSummary) -> None:
        for doc_id in self._store.document_ids():
            if doc_id in live:
                continue
            try:
                changes = self._detector.classify_removed(self._store.get(doc_id))
                self._store.delete(changes.to_delete)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                summary.document_failures.append(DocumentFailure(doc_id, error))
                logger.warning(
                    "index-document-failed",
                    exc_info=True,
                    extra={"event": {"doc_id": doc_id, "error": error, "stage": "prune"}},
                )
                continue
            summary.deleted += 1
            summary.chunks_deleted += len(changes.to_delete)
            logger.info(
                "index-document-pruned",
                extra={"event": {"doc_id": doc_id, "chunks": len(changes.to_delete)}},
            )

    def remove_documents(self, doc_ids: Sequence[str]) -> int:
        """Delete every stored chunk of ``doc_ids``; returns the number of chunks removed."""

        removed: List[str] = []
        for doc_id in doc_ids:
            removed.extend(self._detector.classify_removed(self._store.get(doc_id)).to_delete)
        if removed:
            self._store.delete(removed)
        return len(removed)

    @staticmethod
    def _metadata_for(document: SourceDocument) -> DocumentMetadata:
        metadata = document.metadata
        if metadata.title is None:
            title = document_title(document.text)
            if title is not None:
                metadata = DocumentMetadata(
                    product=metadata.product,
                    version=metadata.version,
                    title=title,
                    url=metadata.url,
                    path=metadata.path,
                )
        return metadata

    @staticmethod
    def _log_changes(doc_id: str, changes: ChangeSet, embedded: int) -> None:
        logger.debug(
            "index-document",
            extra={
                "event": {
                    "doc_id": doc_id,
                    "new": len(changes.new),
                    "changed": len(changes.changed),
                    "unchanged": len(changes.unchanged),
                    "deleted": len(changes.deleted),
                    "embedded": embedded,
                }
            },
        )
