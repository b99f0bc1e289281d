"""speechctl - Configuration.

Constants plus environment overrides, gathered into an explicit Config value
that is passed into the core. No external config libraries.

Environment variables:
- SPEECH_MODELS_DIR: install root (default: ./speech)
- SPEECH_BIN_DIR: runtime link directory (default: <models_dir>/bin)
- SPEECH_MANIFEST_URL: manifest source URL or path
- SPEECH_LOCK_TTL_SEC: install lock TTL (default: 1800)
- SPEECH_LOCK_WAIT_SEC: how long to wait for a busy key (default: 600)
- SPEECH_HTTP_TIMEOUT_SEC: per-request socket timeout (default: 30)
"""

import os
from dataclasses import dataclass
from pathlib import Path

# Default install root, relative to the working directory (matches --dest default)
DEFAULT_MODELS_DIR = Path("./speech")

# Release manifest published by the build-speech workflow
DEFAULT_MANIFEST_URL = (
    "https://github.com/speechctl/speech-assets/releases/latest/download/manifest.json"
)

# State directory name under the install root
STATE_DIR_NAME = ".speechctl"
STATE_DB_NAME = "state.db"
STAGING_DIR_NAME = "staging"
BIN_DIR_NAME = "bin"

# Manifest schema versions this engine understands
SUPPORTED_MANIFEST_SCHEMA_VERSIONS = frozenset({1})

# Retry policy for manifest and artifact transfers
# 3 total attempts, exponential backoff with full jitter
FETCH_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_CAP_SECONDS = 8.0

# Bounded worker pool for multi-part installs
MAX_PARALLEL_DOWNLOADS = 3

# Download chunk size (cancellation is checked between chunks)
DOWNLOAD_CHUNK_SIZE = 65536

# Poll interval while waiting for another invocation's install lock
LOCK_POLL_INTERVAL_SECONDS = 0.2


def _get_positive_float(name: str, default: float) -> float:
    """Read a positive number from the environment, falling back on default.

    Invalid or non-positive values are ignored.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = float(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_path(name: str) -> Path | None:
    env_val = os.environ.get(name, "").strip()
    return Path(env_val) if env_val else None


@dataclass(frozen=True)
class Config:
    """Resolved configuration for one invocation of the core."""

    models_dir: Path
    bin_dir: Path
    manifest_url: str
    lock_ttl_seconds: float = 1800.0
    lock_wait_seconds: float = 600.0
    http_timeout_seconds: float = 30.0

    @property
    def state_dir(self) -> Path:
        return self.models_dir / STATE_DIR_NAME

    @property
    def state_db_path(self) -> Path:
        return self.state_dir / STATE_DB_NAME

    @property
    def staging_root(self) -> Path:
        return self.state_dir / STAGING_DIR_NAME


def load_config(
    dest: str | Path | None = None,
    manifest_url: str | None = None,
    bin_dir: str | Path | None = None,
) -> Config:
    """Build a Config from flags, environment, then built-in defaults.

    Args:
        dest: Install root from --dest (overrides SPEECH_MODELS_DIR).
        manifest_url: Manifest source from --manifest (overrides SPEECH_MANIFEST_URL).
        bin_dir: Runtime link directory (overrides SPEECH_BIN_DIR).

    Returns:
        Resolved Config.
    """
    models_dir = Path(dest) if dest else (_get_path("SPEECH_MODELS_DIR") or DEFAULT_MODELS_DIR)
    models_dir = models_dir.expanduser().resolve()

    resolved_bin = Path(bin_dir) if bin_dir else _get_path("SPEECH_BIN_DIR")
    if resolved_bin is None:
        resolved_bin = models_dir / BIN_DIR_NAME

    source = manifest_url or os.environ.get("SPEECH_MANIFEST_URL", "").strip() or DEFAULT_MANIFEST_URL

    return Config(
        models_dir=models_dir,
        bin_dir=resolved_bin.expanduser().resolve(),
        manifest_url=source,
        lock_ttl_seconds=_get_positive_float("SPEECH_LOCK_TTL_SEC", 1800.0),
        lock_wait_seconds=_get_positive_float("SPEECH_LOCK_WAIT_SEC", 600.0),
        http_timeout_seconds=_get_positive_float("SPEECH_HTTP_TIMEOUT_SEC", 30.0),
    )
