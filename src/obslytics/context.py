"""Cancellable execution context with an optional deadline.

A ``Context`` is handed explicitly to every blocking operation of the
pipeline. Operations poll it with ``check()`` at their suspension points
(before each series, each sample, each encoded row and before committing
the artifact).
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Optional

from .errors import Cancelled, ContextError, DeadlineExceeded


class Context:
    """Cancellation flag plus monotonic deadline, safe to share across threads."""

    def __init__(self, deadline: Optional[float] = None):
        """Initialize context.

        Args:
            deadline: Absolute ``time.monotonic()`` value after which the
                context is expired, or None for no deadline
        """
        self._deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "Context":
        """Context that is never expired unless cancelled."""
        return cls()

    @classmethod
    def with_timeout(cls, timeout: float | timedelta) -> "Context":
        """Context expiring ``timeout`` (seconds or timedelta) from now."""
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        return cls(deadline=time.monotonic() + float(timeout))

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> Optional[ContextError]:
        if self._cancelled.is_set():
            return Cancelled("context cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def check(self) -> None:
        """Raise the context error if cancelled or expired."""
        err = self.err()
        if err is not None:
            raise err
