"""Error taxonomy for indexing and query flows.

Failures are split by what the caller can do about them:

- ``TransientProviderError``: rate limits, timeouts, dropped connections. The
  retry executor backs off and tries again up to the policy ceiling.
- ``PermanentInputError``: malformed payloads, auth failures, vectors with the
  wrong dimensionality. Never retried; the affected unit is marked failed.
- ``PartialRetrievalDegradation``: not an exception. One retrieval branch was
  unavailable and the query continued on the other one; the record travels on
  the response so callers can surface it.
- ``RetrievalError``: both retrieval branches failed.
- ``ConfigurationError``: credentials or endpoints are missing. Raised while
  wiring providers, before any work starts.
- ``OperationCancelled``: the caller cancelled the query or indexing run.
"""

from __future__ import annotations

import enum
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

import httpx

if TYPE_CHECKING:  # pragma: no cover - typing only
    from SemanticDocs.concurrency import CancellationToken

__all__ = (
    "ConfigurationError",
    "ErrorClass",
    "OperationCancelled",
    "PartialRetrievalDegradation",
    "PermanentInputError",
    "RetrievalError",
    "SemanticDocsError",
    "TransientProviderError",
    "classify_error",
    "raise_if_cancelled",
)


class SemanticDocsError(RuntimeError):
    """Base class for errors raised by the hybrid search pipeline."""


class TransientProviderError(SemanticDocsError):
    """Retryable provider failure (HTTP 429/5xx, timeout, connection reset).

    Attributes:
        retry_after: Seconds the provider asked us to wait, when it said so.
        status_code: HTTP status of the failed response, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.status_code = status_code


class PermanentInputError(SemanticDocsError):
    """Non-retryable failure tied to the submitted input or credentials."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(SemanticDocsError):
    """Required provider credentials or endpoints are missing or invalid."""


class OperationCancelled(SemanticDocsError):
    """The caller cancelled the running query or indexing operation."""


@dataclass(frozen=True)
class PartialRetrievalDegradation:
    """One retrieval branch failed; results come from the surviving branch.

    Attributes:
        branch: ``"vector"`` or ``"keyword"``.
        reason: Short failure description (exception type and message, or ``"timeout"``).
    """

    branch: str
    reason: str


class RetrievalError(SemanticDocsError):
    """Both retrieval branches failed, so the query cannot produce results."""

    def __init__(self, message: str, degradations: Sequence[PartialRetrievalDegradation] = ()) -> None:
        super().__init__(message)
        self.degradations = tuple(degradations)


class ErrorClass(enum.Enum):
    """Retry classification for provider failures."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


_TRANSIENT_TYPES = (
    TransientProviderError,
    FutureTimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.TransportError,
)


def classify_error(exc: BaseException) -> ErrorClass:
    """Map ``exc`` onto :class:`ErrorClass`.

    Timeouts and connection-level failures are transient; everything else,
    including :class:`PermanentInputError`, is permanent.
    """

    if isinstance(exc, PermanentInputError):
        return ErrorClass.PERMANENT
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def raise_if_cancelled(token: Optional["CancellationToken"], operation: str) -> None:
    """Raise :class:`OperationCancelled` when ``token`` has been cancelled."""

    if token is not None and token.is_cancelled():
        raise OperationCancelled(f"{operation} cancelled by caller")
