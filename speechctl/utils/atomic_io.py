"""speechctl - Atomic I/O utilities.

Implements the atomic publish rule:
1. Write to temp path in same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

The final path either contains complete valid data or does not exist.
Partial writes only affect the temp file.

Failpoints:
- ATOMIC_WRITE_AFTER_TMP_WRITE: After writing to temp file, before fsync
- ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME: After fsync, before atomic rename
- ATOMIC_WRITE_AFTER_RENAME: After atomic rename completes
"""

import logging
import os
import shutil
import uuid
from pathlib import Path

from speechctl.utils.failpoints import maybe_fail

logger = logging.getLogger(__name__)


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, handling partial writes.

    Loops until all bytes are written, handling short writes and EINTR.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    total_written = 0
    data_len = len(data)

    while total_written < data_len:
        try:
            written = os.write(fd, data[total_written:])
            if written == 0:
                raise OSError("os.write() returned 0 bytes unexpectedly")
            total_written += written
        except InterruptedError:
            continue


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = ".tmp",
) -> None:
    """Atomically write bytes to a file.

    Idempotent: safe to call even if temp file exists (overwrites temp).
    Never corrupts final path - atomic rename ensures all-or-nothing.

    Args:
        final_path: The target path for the final file.
        data: Bytes to write.
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Raises:
        OSError: If directory creation, write, or rename fails.
    """
    final_path = Path(final_path)
    temp_path = final_path.with_suffix(final_path.suffix + temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_all(fd, data)

        maybe_fail("ATOMIC_WRITE_AFTER_TMP_WRITE")

        os.fsync(fd)
    except OSError:
        os.close(fd)
        try:
            os.remove(temp_path)
        except OSError:
            pass  # Best-effort cleanup
        raise
    else:
        os.close(fd)

    fsync_directory(final_path.parent)

    maybe_fail("ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME")

    os.replace(temp_path, final_path)

    maybe_fail("ATOMIC_WRITE_AFTER_RENAME")


def atomic_write_text(
    final_path: str | Path,
    text: str,
    encoding: str = "utf-8",
    temp_suffix: str = ".tmp",
) -> None:
    """Atomically write text to a file.

    Args:
        final_path: The target path for the final file.
        text: Text string to write.
        encoding: Text encoding (default: utf-8).
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Raises:
        OSError: If directory creation, write, or rename fails.
    """
    atomic_write_bytes(final_path, text.encode(encoding), temp_suffix)


def fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory.

    Helps rename durability on some filesystems. Errors are ignored.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY is not available everywhere
        pass


def publish_directory(staged_dir: str | Path, final_dir: str | Path) -> Path:
    """Move a fully verified staged directory to its final location.

    ``final_dir`` must not exist yet; callers publish into fresh, uniquely
    named directories so that the rename never clobbers a live install.
    Staging and final paths must be on the same filesystem.

    Args:
        staged_dir: Directory holding the verified content.
        final_dir: Target directory path.

    Returns:
        The final directory path.

    Raises:
        FileExistsError: If final_dir already exists.
        OSError: If the rename fails.
    """
    staged_dir = Path(staged_dir)
    final_dir = Path(final_dir)

    if final_dir.exists():
        raise FileExistsError(f"Publish target already exists: {final_dir}")

    final_dir.parent.mkdir(parents=True, exist_ok=True)
    os.rename(staged_dir, final_dir)
    fsync_directory(final_dir.parent)

    logger.debug("Published %s -> %s", staged_dir, final_dir)
    return final_dir


def replace_symlink(target: str | Path, link_path: str | Path) -> None:
    """Atomically point ``link_path`` at ``target``.

    Creates the new link under a temporary name next to ``link_path`` and
    renames it over the old one, so readers never see a missing link.

    Raises:
        OSError: If the platform refuses to create symlinks.
    """
    link_path = Path(link_path)
    link_path.parent.mkdir(parents=True, exist_ok=True)
    temp_link = link_path.with_name(f".{link_path.name}.{uuid.uuid4().hex[:8]}.tmp")

    os.symlink(Path(target), temp_link, target_is_directory=True)
    try:
        os.replace(temp_link, link_path)
    except OSError:
        try:
            os.unlink(temp_link)
        except OSError:
            pass
        raise


def remove_tree(path: str | Path) -> bool:
    """Remove a file or directory tree, best-effort.

    Returns:
        True if something was removed.
    """
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        return False
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
        return False


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = ".tmp") -> int:
    """Clean up orphan temp files in a directory.

    Called before an install or during error recovery to remove incomplete
    writes.

    Args:
        directory: Directory to scan for temp files.
        temp_suffix: Suffix pattern to match (default: ".tmp").

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    for temp_file in directory.glob(f"*{temp_suffix}"):
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            pass  # Best-effort cleanup

    return removed
