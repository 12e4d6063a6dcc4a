"""Deadlines and cancellation for managed-cluster calls."""

from __future__ import annotations

import threading
import time

from opshub_access.errors import DeadlineExceededError


class Deadline:
    """An absolute expiry plus a cancellation flag.

    Entry points accept an optional ``Deadline``. The gateway calls
    :meth:`remaining` before every request and forwards the result as the
    Kubernetes client's ``_request_timeout``, so an in-flight call is
    aborted by the HTTP layer once the budget is spent.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._expires_at = (
            time.monotonic() + timeout if timeout is not None else None
        )
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(timeout=seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self) -> None:
        """Raise DeadlineExceededError if cancelled or out of time."""
        if self._cancelled.is_set():
            raise DeadlineExceededError("Operation cancelled")
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            raise DeadlineExceededError("Deadline exceeded")

    def remaining(self) -> float | None:
        """Seconds left (``None`` when unbounded). Raises once expired."""
        self.check()
        if self._expires_at is None:
            return None
        return max(self._expires_at - time.monotonic(), 0.001)


def check(deadline: Deadline | None) -> None:
    if deadline is not None:
        deadline.check()
