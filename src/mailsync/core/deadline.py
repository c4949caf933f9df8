from __future__ import annotations

import threading
import time

from mailsync.errors import DeadlineExceeded


class Deadline:
    """Caller-supplied budget for one unit of work, cancellable from another thread."""

    def __init__(self, seconds: float | None = None, *, clock=time.monotonic):  # noqa: ANN001
        self._clock = clock
        self._expires_at = clock() + seconds if seconds is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        if self.cancelled:
            raise DeadlineExceeded("Operation cancelled")
        if self.expired():
            raise DeadlineExceeded("Deadline exceeded")

    def timeout(self, default: float) -> float:
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)
