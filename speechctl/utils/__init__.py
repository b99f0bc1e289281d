"""speechctl - Utility modules."""

from speechctl.utils.atomic_io import atomic_write_bytes, atomic_write_text, publish_directory
from speechctl.utils.cancel import CancelToken
from speechctl.utils.hashing import digests_equal, file_digest, parse_digest
from speechctl.utils.paths import (
    component_dir,
    receipt_path,
    runtime_link_path,
    staging_dir,
)

__all__ = [
    # atomic_io
    "atomic_write_bytes",
    "atomic_write_text",
    "publish_directory",
    # cancel
    "CancelToken",
    # hashing
    "file_digest",
    "parse_digest",
    "digests_equal",
    # paths
    "component_dir",
    "staging_dir",
    "receipt_path",
    "runtime_link_path",
]
