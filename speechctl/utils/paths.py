"""speechctl - Canonical path utilities.

Returns canonical Paths for the on-disk layout. Does NOT create directories.
Directory creation is the responsibility of the calling code.

Layout under Config.models_dir:
    .speechctl/state.db
    .speechctl/staging/{component}-{variant}/
    {component}/{variant}/{release}-{digest12}-{nonce}/
"""

import re
import uuid
from pathlib import Path

from speechctl.config import Config
from speechctl.utils.hashing import short_digest

RECEIPT_FILE_NAME = ".receipt.json"
RUNTIME_SUBDIR = "bin"

# Used in place of the empty variant name on disk
DEFAULT_VARIANT_DIR = "default"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def variant_dir_name(variant: str) -> str:
    """Directory name for a variant ("" maps to "default")."""
    return variant or DEFAULT_VARIANT_DIR


def component_dir(config: Config, component: str, variant: str) -> Path:
    """Get the directory holding all published versions for a key.

    Returns:
        Path: {models_dir}/{component}/{variant}
    """
    return config.models_dir / component / variant_dir_name(variant)


def staging_dir(config: Config, component: str, variant: str) -> Path:
    """Get the staging directory owned by an in-progress install for a key.

    Returns:
        Path: {models_dir}/.speechctl/staging/{component}-{variant}
    """
    return config.staging_root / f"{component}-{variant_dir_name(variant)}"


def version_dir_name(release_version: str, digest: str, nonce: str | None = None) -> str:
    """Name of a fresh published directory.

    The nonce makes every publish land in a new directory, so publishing
    never overwrites the directory the current record points at.
    """
    release = _UNSAFE_NAME_CHARS.sub("_", release_version) or "unversioned"
    nonce = nonce or uuid.uuid4().hex[:8]
    return f"{release}-{short_digest(digest)}-{nonce}"


def receipt_path(install_dir: str | Path) -> Path:
    """Get the install receipt path inside a published directory."""
    return Path(install_dir) / RECEIPT_FILE_NAME


def runtime_link_path(config: Config, component: str, variant: str) -> Path:
    """Get the symlink that exposes an install's runtime parts.

    Returns:
        Path: {bin_dir}/{component}-{variant}
    """
    return config.bin_dir / f"{component}-{variant_dir_name(variant)}"
