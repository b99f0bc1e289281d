"""speechctl - Retry policy helpers.

Exponential backoff with full jitter, and the transient/structural split
used by manifest and artifact transfers.
"""

from __future__ import annotations

import http.client
import random
import socket
import urllib.error

from speechctl.config import BACKOFF_BASE_SECONDS, BACKOFF_CAP_SECONDS

# HTTP statuses worth retrying
RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = BACKOFF_CAP_SECONDS,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based), with full jitter.

    The upper bound doubles per attempt: base, 2*base, 4*base ... up to cap.
    """
    rng = rng or random
    upper = min(cap, base * (2 ** (attempt - 1)))
    return rng.uniform(0, upper)


def is_transient(exc: BaseException) -> bool:
    """Return True if a transfer failure is worth retrying.

    Transient: connection errors, timeouts, truncated bodies, HTTP 5xx/408/429.
    Structural: other HTTP 4xx and everything else.
    """
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code in RETRYABLE_HTTP_STATUSES
    if isinstance(exc, urllib.error.URLError):
        return True
    return isinstance(exc, (TimeoutError, socket.timeout, ConnectionError, http.client.IncompleteRead))
