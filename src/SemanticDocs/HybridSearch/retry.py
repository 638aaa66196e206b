"""Retry policy value object and a Tenacity-backed retry executor.

The policy (how many attempts, how long to back off, which errors are worth
retrying) lives in :class:`RetryPolicy`; call sites hand a zero-argument
callable to :meth:`RetryExecutor.run` and never loop themselves.

Backoff is exponential (``backoff_base * 2**n`` capped at ``backoff_max``). A
``TransientProviderError`` that carries ``retry_after`` (parsed from the
provider's ``Retry-After`` header) waits that long instead, within the same
cap. Sleeping goes through the caller's cancellation token when one is
supplied, so a cancelled operation stops backing off immediately.

Example:
    >>> policy = RetryPolicy(max_attempts=3, backoff_base=0.0)
    >>> RetryExecutor(policy).run(lambda: 42)
    42
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from SemanticDocs.concurrency import CancellationToken

from .config import EmbeddingConfig
from .errors import ErrorClass, TransientProviderError, classify_error, raise_if_cancelled

__all__ = ("RetryExecutor", "RetryPolicy")

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling, backoff bounds, and error classification.

    Attributes:
        max_attempts: Total attempts including the first one.
        backoff_base: Initial backoff in seconds; doubles per retry.
        backoff_max: Upper bound on any single wait.
        classify: Maps an exception onto :class:`ErrorClass`; only
            ``TRANSIENT`` failures are retried.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    classify: Callable[[BaseException], ErrorClass] = field(default=classify_error)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("RetryPolicy backoff bounds must be non-negative")

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        )

    def is_transient(self, exc: BaseException) -> bool:
        return self.classify(exc) is ErrorClass.TRANSIENT


class _RetryAfterOrBackoff(wait_base):
    """Honour ``TransientProviderError.retry_after`` before exponential backoff."""

    def __init__(self, fallback: wait_base, cap: float) -> None:
        self._fallback = fallback
        self._cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, TransientProviderError) and exc.retry_after is not None:
            return min(max(0.0, exc.retry_after), self._cap)
        return float(self._fallback(retry_state))


class RetryExecutor:
    """Run callables under a :class:`RetryPolicy`.

    Args:
        policy: Policy to apply.
        sleep: Sleep function used between attempts (``time.sleep`` by
            default); tests inject a recorder.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._policy = policy
        self._sleep = sleep or time.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _retrying(self, cancel_token: Optional[CancellationToken], operation: str) -> Retrying:
        policy = self._policy

        def sleep(seconds: float) -> None:
            if cancel_token is not None:
                cancel_token.wait(seconds)
            else:
                self._sleep(seconds)

        return Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=_RetryAfterOrBackoff(
                wait_exponential(multiplier=policy.backoff_base, min=0, max=policy.backoff_max),
                policy.backoff_max,
            ),
            retry=retry_if_exception(policy.is_transient),
            before_sleep=_log_retry(operation),
            sleep=sleep,
            reraise=True,
        )

    def run(
        self,
        fn: Callable[[], T],
        *,
        cancel_token: Optional[CancellationToken] = None,
        operation: str = "provider call",
    ) -> T:
        """Call ``fn`` until it succeeds, fails permanently, or attempts run out.

        Raises:
            OperationCancelled: If ``cancel_token`` is cancelled before an attempt.
            Exception: The last error raised by ``fn`` once retrying stops.
        """

        for attempt in self._retrying(cancel_token, operation):
            with attempt:
                raise_if_cancelled(cancel_token, operation)
                result = fn()
        return result


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    """Return a ``before_sleep`` hook logging ``<operation>-retry`` events."""

    event = "-".join(operation.split()) + "-retry"

    def before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        next_action = retry_state.next_action
        logger.warning(
            event,
            extra={
                "event": {
                    "operation": operation,
                    "attempt": retry_state.attempt_number,
                    "sleep_s": round(next_action.sleep, 3) if next_action is not None else None,
                    "error": f"{type(error).__name__}: {error}" if error is not None else None,
                }
            },
        )

    return before_sleep
