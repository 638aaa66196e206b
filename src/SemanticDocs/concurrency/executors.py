"""Executor factory utilities used by the hybrid search fan-out stages."""

from __future__ import annotations

import threading
from concurrent import futures
from typing import Any, Callable, Optional, TypeVar

Executor = futures.Executor
T = TypeVar("T")


def create_executor(max_workers: int, thread_name_prefix: str = "semanticdocs") -> futures.ThreadPoolExecutor:
    """
    Return a bounded thread pool for network-bound fan-out.

    Args:
        max_workers: Upper bound on concurrently running tasks.
        thread_name_prefix: Prefix applied to worker thread names.

    Returns:
        Thread pool executor. Callers own its lifecycle and must shut it down.

    Raises:
        TypeError: If ``max_workers`` is not an integer.
        ValueError: If ``max_workers`` is less than one.
    """
    _validate_workers(max_workers)
    return futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)


def _validate_workers(max_workers: int) -> None:
    if isinstance(max_workers, bool) or not isinstance(max_workers, int):
        raise TypeError(f"max_workers must be an int, received {type(max_workers).__name__}")
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")


def shutdown_executor(executor: Optional[Executor], *, cancel_futures: bool = True) -> None:
    """Shut ``executor`` down without waiting, cancelling queued work."""

    if executor is None:
        return
    executor.shutdown(wait=False, cancel_futures=cancel_futures)


class RecyclingExecutor:
    """Lazily created thread pool that is replaced when callers abandon running work.

    A timed-out call cannot be interrupted once a worker has picked it up, so
    :meth:`abandon` retires the current pool instead: work already queued on
    it still drains, while later submissions land on a fresh pool whose
    workers are not occupied by the abandoned call.

    Args:
        max_workers: Worker count of each pool generation.
        thread_name_prefix: Prefix applied to worker thread names.
    """

    def __init__(self, max_workers: int, thread_name_prefix: str = "semanticdocs") -> None:
        _validate_workers(max_workers)
        self._max_workers = max_workers
        self._prefix = thread_name_prefix
        self._lock = threading.Lock()
        self._pool: Optional[futures.ThreadPoolExecutor] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of pools retired so far."""
        return self._generation

    def submit(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> "futures.Future[T]":
        with self._lock:
            if self._pool is None:
                self._pool = create_executor(self._max_workers, self._prefix)
            return self._pool.submit(fn, *args, **kwargs)

    def abandon(self, future: "futures.Future[Any]") -> None:
        """Stop waiting on ``future``; retire the pool if it is still running."""

        if future.cancel() or future.done():
            return
        with self._lock:
            if self._pool is not None:
                shutdown_executor(self._pool, cancel_futures=False)
                self._pool = None
                self._generation += 1

    def shutdown(self) -> None:
        with self._lock:
            shutdown_executor(self._pool)
            self._pool = None
