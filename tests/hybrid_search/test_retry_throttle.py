"""Retry policy classification/backoff and request throttle pacing."""

from __future__ import annotations

import threading
import time

import httpx
import pytest

from SemanticDocs.concurrency import CancellationToken
from SemanticDocs.HybridSearch.config import EmbeddingConfig
from SemanticDocs.HybridSearch.errors import (
    ErrorClass,
    OperationCancelled,
    PermanentInputError,
    TransientProviderError,
    classify_error,
)
from SemanticDocs.HybridSearch.retry import RetryExecutor, RetryPolicy
from SemanticDocs.HybridSearch.throttle import RequestThrottle


class Flaky:
    """Callable failing with the queued errors before returning ``value``."""

    def __init__(self, *errors: BaseException, value: object = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def _executor(sleeps: list, **policy) -> RetryExecutor:
    return RetryExecutor(RetryPolicy(**policy), sleep=sleeps.append)


def test_transient_errors_back_off_exponentially() -> None:
    sleeps: list = []
    fn = Flaky(TransientProviderError("busy"), TransientProviderError("busy"))

    result = _executor(sleeps, max_attempts=3, backoff_base=1.0, backoff_max=30.0).run(fn)

    assert result == "ok"
    assert fn.calls == 3
    assert sleeps == [1.0, 2.0]


def test_each_retry_logs_an_operation_event(caplog) -> None:
    sleeps: list = []
    fn = Flaky(TransientProviderError("busy", retry_after=2.0))

    with caplog.at_level("WARNING", logger="SemanticDocs.HybridSearch.retry"):
        _executor(sleeps, max_attempts=3, backoff_base=1.0, backoff_max=30.0).run(fn, operation="embedding batch")

    (record,) = [r for r in caplog.records if r.getMessage() == "embedding-batch-retry"]
    assert record.event == {
        "operation": "embedding batch",
        "attempt": 1,
        "sleep_s": 2.0,
        "error": "TransientProviderError: busy",
    }


def test_retry_after_overrides_backoff_within_cap() -> None:
    sleeps: list = []
    fn = Flaky(
        TransientProviderError("slow down", retry_after=7.0),
        TransientProviderError("slow down", retry_after=100.0),
    )

    _executor(sleeps, max_attempts=3, backoff_base=1.0, backoff_max=30.0).run(fn)

    assert sleeps == [7.0, 30.0]


def test_permanent_errors_are_not_retried() -> None:
    sleeps: list = []
    fn = Flaky(PermanentInputError("bad input", status_code=400))

    with pytest.raises(PermanentInputError):
        _executor(sleeps, max_attempts=5).run(fn)
    assert fn.calls == 1
    assert sleeps == []


def test_exhausted_attempts_reraise_the_last_error() -> None:
    sleeps: list = []
    fn = Flaky(*(TransientProviderError(f"attempt {i}") for i in range(3)))

    with pytest.raises(TransientProviderError, match="attempt 2"):
        _executor(sleeps, max_attempts=3, backoff_base=0.0).run(fn)
    assert fn.calls == 3


def test_cancelled_token_prevents_the_call() -> None:
    token = CancellationToken()
    token.cancel()
    fn = Flaky()

    with pytest.raises(OperationCancelled):
        RetryExecutor(RetryPolicy()).run(fn, cancel_token=token, operation="embedding")
    assert fn.calls == 0


def test_cancellation_interrupts_backoff() -> None:
    token = CancellationToken()
    fn = Flaky(TransientProviderError("busy"))
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    started = time.monotonic()

    with pytest.raises(OperationCancelled):
        RetryExecutor(RetryPolicy(max_attempts=2, backoff_base=10.0, backoff_max=10.0)).run(
            fn, cancel_token=token
        )
    assert time.monotonic() - started < 5.0
    assert fn.calls == 1


def test_policy_from_config() -> None:
    policy = RetryPolicy.from_config(EmbeddingConfig(max_attempts=5, backoff_base=0.5, backoff_max=4.0))

    assert (policy.max_attempts, policy.backoff_base, policy.backoff_max) == (5, 0.5, 4.0)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TransientProviderError("429"), ErrorClass.TRANSIENT),
        (httpx.ConnectTimeout("slow"), ErrorClass.TRANSIENT),
        (ConnectionResetError(), ErrorClass.TRANSIENT),
        (PermanentInputError("400"), ErrorClass.PERMANENT),
        (ValueError("boom"), ErrorClass.PERMANENT),
    ],
)
def test_classify_error(error: BaseException, expected: ErrorClass) -> None:
    assert classify_error(error) is expected


def test_disabled_throttle_counts_acquisitions() -> None:
    throttle = RequestThrottle(0)

    for _ in range(3):
        throttle.acquire()

    assert not throttle.enabled
    assert throttle.acquired == 3
    with pytest.raises(ValueError):
        RequestThrottle(-1)


def test_throttle_spaces_concurrent_requests() -> None:
    throttle = RequestThrottle(50, name="test")
    started = time.monotonic()
    workers = [threading.Thread(target=throttle.acquire) for _ in range(3)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5.0)

    assert throttle.enabled
    assert throttle.interval_ms == 50
    assert throttle.acquired == 3
    assert time.monotonic() - started >= 0.09
