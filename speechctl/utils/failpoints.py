"""speechctl - Failpoint injection for resilience testing.

Provides deterministic crash injection for testing power-failure scenarios.
Used to verify atomic publish, staging cleanup, and lock reclamation.

Safety gate: Failpoints are only active when SPEECHCTL_ENABLE_FAILPOINTS=1.
The default is a complete no-op.

Environment variables:
- SPEECHCTL_ENABLE_FAILPOINTS: Set to "1" to enable failpoint system (default: disabled)
- SPEECHCTL_FAILPOINT: Name of the failpoint to trigger (e.g., "INSTALL_AFTER_VERIFY")
- SPEECHCTL_FAILPOINT_EXIT_CODE: Exit code to use when crashing (default: 42)
- SPEECHCTL_FAILPOINT_ONCE: Set to "1" to only trigger once, then clear

Usage:
    from speechctl.utils.failpoints import maybe_fail

    maybe_fail("INSTALL_AFTER_VERIFY")

Known failpoints:
    ATOMIC_WRITE_AFTER_TMP_WRITE, ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME,
    ATOMIC_WRITE_AFTER_RENAME, DOWNLOAD_AFTER_CHUNK, INSTALL_AFTER_VERIFY,
    INSTALL_AFTER_PUBLISH_BEFORE_RECORD, INSTALL_AFTER_RECORD
"""

from __future__ import annotations

import os

_PREFIX = "FAILPOINT_"


def _normalize(name: str) -> str:
    name = name.upper()
    if name.startswith(_PREFIX):
        name = name[len(_PREFIX) :]
    return name


def maybe_fail(point: str) -> None:
    """Crash the process if ``point`` is the active failpoint.

    Uses os._exit() so that finally blocks, atexit hooks and exception
    handlers do not run, which is what a power loss looks like to the
    on-disk state.

    Args:
        point: The failpoint name (with or without the FAILPOINT_ prefix).
    """
    if not is_failpoint_enabled():
        return

    target = os.environ.get("SPEECHCTL_FAILPOINT", "")
    if not target:
        return

    if _normalize(point) != _normalize(target):
        return

    try:
        exit_code = int(os.environ.get("SPEECHCTL_FAILPOINT_EXIT_CODE", "42"))
    except ValueError:
        exit_code = 42

    if os.environ.get("SPEECHCTL_FAILPOINT_ONCE") == "1":
        # Only affects the current process.
        os.environ.pop("SPEECHCTL_FAILPOINT", None)
        os.environ.pop("SPEECHCTL_FAILPOINT_ONCE", None)

    os._exit(exit_code)


def is_failpoint_enabled() -> bool:
    """Return True if SPEECHCTL_ENABLE_FAILPOINTS=1."""
    return os.environ.get("SPEECHCTL_ENABLE_FAILPOINTS") == "1"

