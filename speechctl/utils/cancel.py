"""speechctl - Cancellation token.

A CancelToken is checked at every suspension point of an install (manifest
fetch, each download chunk, each archive entry, backoff sleeps). It is
cancelled explicitly (signal handler, sibling failure) or by a deadline.
"""

from __future__ import annotations

import threading
import time

from speechctl.errors import CancelledError


class CancelToken:
    """Cooperative cancellation flag with an optional deadline."""

    def __init__(self, timeout_seconds: float | None = None, parent: CancelToken | None = None):
        self._event = threading.Event()
        self._reason = ""
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        self._parent = parent

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("timeout exceeded")
            return True
        if self._parent is not None and self._parent.cancelled:
            self.cancel(self._parent.reason)
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        """Raise CancelledError if the token is cancelled."""
        if self.cancelled:
            suffix = f" during {where}" if where else ""
            raise CancelledError(f"{self._reason}{suffix}")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early (and raising) on cancellation."""
        end = time.monotonic() + seconds
        while True:
            self.raise_if_cancelled("backoff")
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            self._event.wait(min(remaining, 0.1))

    def child(self) -> CancelToken:
        """Create a token that is cancelled when this one is."""
        return CancelToken(parent=self)


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    """Return ``cancel`` or a fresh token that never fires."""
    return cancel if cancel is not None else CancelToken()
