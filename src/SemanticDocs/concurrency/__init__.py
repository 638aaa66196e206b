"""
Concurrency helpers shared across SemanticDocs components.

Exposes :func:`create_executor` for the embedding batcher's bounded pool and
:class:`RecyclingExecutor` for the dual retriever and the reranker adapter,
whose timed-out calls must not hold workers needed by later queries. The
cooperative :class:`CancellationToken` primitives let callers abort a query or
an indexing run.
"""

from .cancellation import CancellationToken, CancellationTokenGroup
from .executors import RecyclingExecutor, create_executor, shutdown_executor

__all__ = [
    "CancellationToken",
    "CancellationTokenGroup",
    "RecyclingExecutor",
    "create_executor",
    "shutdown_executor",
]
