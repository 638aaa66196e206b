"""Cooperative cancellation for queries and indexing runs.

Searches and indexing runs fan out to worker threads that call remote
providers. A caller that loses interest (a closed HTTP request, a Ctrl-C in
the CLI, a superseded refresh) flips a :class:`CancellationToken`. Pipeline
stages check the token before submitting work and between joins, and the
callbacks registered through :meth:`CancellationToken.add_callback` cancel the
outstanding futures, so results from cancelled calls are never merged.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe flag shared between a caller and the work it started.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation and fire registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks are best effort
                logger.exception("cancellation-callback-error")

    def is_cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block for up to ``timeout`` seconds, returning early on cancellation.

        Used as an interruptible sleep by retry backoff.
        """
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on cancellation.

        The callback runs immediately when the token is already cancelled.

        Returns:
            A zero-argument function that unregisters the callback.
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove

    def reset(self) -> None:
        """Clear the flag. Only meant for tests and controlled reuse."""
        with self._lock:
            self._event.clear()


class CancellationTokenGroup:
    """Tokens cancelled together, e.g. every query issued by one session."""

    def __init__(self) -> None:
        self._tokens: list[CancellationToken] = []
        self._lock = threading.Lock()
        self._cancelled = False

    def add_token(self, token: CancellationToken) -> None:
        """Track ``token``; cancel it at once if the group is already cancelled."""
        with self._lock:
            self._tokens.append(token)
            cancelled = self._cancelled
        if cancelled:
            token.cancel()

    def create_token(self) -> CancellationToken:
        """Create, track, and return a new token."""
        token = CancellationToken()
        self.add_token(token)
        return token

    def remove_token(self, token: CancellationToken) -> None:
        """Stop tracking ``token``. Unknown tokens are ignored."""
        with self._lock:
            if token in self._tokens:
                self._tokens.remove(token)

    def cancel_all(self) -> None:
        """Cancel every tracked token and any token added later."""
        with self._lock:
            self._cancelled = True
            tokens = list(self._tokens)
        for token in tokens:
            token.cancel()

    def is_any_cancelled(self) -> bool:
        with self._lock:
            return any(token.is_cancelled() for token in self._tokens)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
