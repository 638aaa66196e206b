"""Process-wide request pacing built on pyrate-limiter.

Every embedding request (first attempts and retries alike) and every query
embedding acquires a slot from the same :class:`RequestThrottle` before
touching the network. The limiter allows one request per
``min_interval_ms`` window and blocks the calling thread until a slot frees
up; concurrent batches therefore queue behind each other instead of
bypassing the pacing.
"""

from __future__ import annotations

import logging
import threading

from pyrate_limiter import BucketFullException, Duration, Limiter, Rate

from .errors import TransientProviderError

__all__ = ("RequestThrottle",)

logger = logging.getLogger(__name__)

_MAX_BLOCKING_DELAY_MS = int(Duration.HOUR)


class RequestThrottle:
    """Minimum spacing between provider requests.

    Args:
        min_interval_ms: Minimum milliseconds between two requests. ``0``
            disables pacing.
        name: Bucket key, used in log events.

    Examples:
        >>> throttle = RequestThrottle(0)
        >>> throttle.acquire()
        >>> throttle.acquired
        1
    """

    def __init__(self, min_interval_ms: int, *, name: str = "provider") -> None:
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be non-negative")
        self._name = name
        self._interval_ms = int(min_interval_ms)
        self._lock = threading.Lock()
        self._acquired = 0
        self._limiter: Limiter | None = None
        if self._interval_ms > 0:
            self._limiter = Limiter(
                Rate(1, self._interval_ms),
                raise_when_fail=False,
                max_delay=_MAX_BLOCKING_DELAY_MS,
                retry_until_max_delay=True,
            )

    @property
    def enabled(self) -> bool:
        return self._limiter is not None

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def acquired(self) -> int:
        """Number of slots granted so far."""
        with self._lock:
            return self._acquired

    def acquire(self) -> None:
        """Block until the next request slot is available.

        Raises:
            TransientProviderError: If the limiter gives up without granting
                a slot, so the caller's retry policy treats it as backpressure.
        """

        if self._limiter is not None:
            try:
                granted = bool(self._limiter.try_acquire(self._name))
            except BucketFullException as exc:
                granted = False
                logger.warning(
                    "throttle-bucket-full",
                    extra={"event": {"throttle": self._name, "detail": str(exc)}},
                )
            if not granted:
                raise TransientProviderError(f"request throttle {self._name!r} did not grant a slot")
        with self._lock:
            self._acquired += 1
