"""speechctl - Download & Verify worker.

Streams artifact parts into a per-key staging directory, verifies size and
digest while streaming, unpacks archives, assembles the install tree and
publishes it to a fresh versioned directory.

Staging layout ({models_dir}/.speechctl/staging/{component}-{variant}/):
    downloads/{fileName}.part   in-flight transfer (resumable)
    downloads/{fileName}        verified file
    install/                    assembled tree; this is what gets published
    install/bin/                runtime parts

Nothing is ever written to a published directory. A verified staged tree is
renamed into place as a whole; the install record switch (orchestrator)
is what makes it current.

Resume:
- A leftover .part is re-hashed and resumed with "Range: bytes=N-"
- 206 with a matching Content-Range start appends; 200 restarts from zero
- Transient errors are retried (FETCH_ATTEMPTS, backoff with jitter), each
  retry resuming from whatever reached disk

Archive safety: entries with absolute paths, drive letters, ".."
components, special files, or links that escape the target are rejected
with UNSAFE_ARCHIVE_ENTRY before anything is extracted for that entry.
"""

from __future__ import annotations

import http.client
import logging
import os
import re
import shutil
import stat
import tarfile
import urllib.error
import urllib.request
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, BinaryIO

from services.artifact_selector.policy import Selection
from speechctl import __version__
from speechctl.config import DOWNLOAD_CHUNK_SIZE, FETCH_ATTEMPTS, MAX_PARALLEL_DOWNLOADS
from speechctl.errors import (
    IntegrityCheckFailedError,
    ManifestInvalidError,
    NetworkError,
    OfflineRequiredError,
    UnsafeArchiveEntryError,
)
from speechctl.schemas import ArtifactPart
from speechctl.utils.atomic_io import fsync_directory, publish_directory, remove_tree
from speechctl.utils.cancel import CancelToken, ensure_token
from speechctl.utils.failpoints import maybe_fail
from speechctl.utils.hashing import HASH_CHUNK_SIZE, digests_equal, format_digest, new_hasher, parse_digest
from speechctl.utils.paths import RUNTIME_SUBDIR, version_dir_name
from speechctl.utils.retry import backoff_delay, is_transient
from speechctl.utils.urls import is_network_source, to_local_path

logger = logging.getLogger(__name__)

USER_AGENT = f"speechctl/{__version__}"

DOWNLOADS_SUBDIR = "downloads"
INSTALL_SUBDIR = "install"
PART_SUFFIX = ".part"

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


class _RangeMismatch(Exception):
    """Server answered a resume request with a range we did not ask for."""


# --- Single part transfer ---


def fetch_artifact(
    part: ArtifactPart,
    staging_dir: str | Path,
    cancel: CancelToken | None = None,
    offline: bool = False,
    timeout: float = 30.0,
    attempts: int = FETCH_ATTEMPTS,
) -> Path:
    """Download (or copy) one part into ``staging_dir`` and verify it.

    Args:
        part: The part to fetch (url, size, digest, file name).
        staging_dir: Directory receiving {fileName}.part and then {fileName}.
        cancel: Checked before each attempt and after each chunk.
        offline: Refuse network URLs.
        timeout: Socket timeout per attempt, in seconds.
        attempts: Total attempts for transient network failures.

    Returns:
        Path to the verified file inside ``staging_dir``.

    Raises:
        OfflineRequiredError: Network URL while offline.
        NetworkError: Retries exhausted or non-retryable HTTP status.
        IntegrityCheckFailedError: Size or digest mismatch.
        CancelledError: Token fired.
    """
    cancel = ensure_token(cancel)
    staging_dir = Path(staging_dir)
    staging_dir.mkdir(parents=True, exist_ok=True)

    name = part.resolved_file_name
    final_path = staging_dir / name
    part_path = staging_dir / f"{name}{PART_SUFFIX}"

    if is_network_source(part.url):
        if offline:
            raise OfflineRequiredError(part.url)
        _download_with_resume(part, part_path, cancel, timeout, attempts)
    else:
        _copy_local(part, part_path, cancel)

    _verify_part_file(part, part_path)
    os.replace(part_path, final_path)
    fsync_directory(staging_dir)
    logger.info("Verified %s (%d bytes, %s)", name, part.size_bytes, part.digest)
    return final_path


def _hash_existing(path: Path, digest: str) -> tuple[Any, int]:
    hasher = new_hasher(digest)
    size = 0
    if path.exists():
        with open(path, "rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
                size += len(chunk)
    return hasher, size


def _stream(
    reader: BinaryIO, out: BinaryIO, hasher: Any, written: int, part: ArtifactPart, cancel: CancelToken
) -> int:
    while True:
        cancel.raise_if_cancelled(f"download of {part.resolved_file_name}")
        chunk = reader.read(DOWNLOAD_CHUNK_SIZE)
        if not chunk:
            return written
        out.write(chunk)
        out.flush()
        hasher.update(chunk)
        written += len(chunk)
        if written > part.size_bytes:
            raise IntegrityCheckFailedError(
                part.resolved_file_name, f"{part.size_bytes} bytes", f"more than {part.size_bytes} bytes"
            )
        maybe_fail("DOWNLOAD_AFTER_CHUNK")


def _copy_local(part: ArtifactPart, part_path: Path, cancel: CancelToken) -> None:
    try:
        source = to_local_path(part.url)
    except ValueError as e:
        raise ManifestInvalidError(part.url, str(e)) from e

    hasher = new_hasher(part.digest)
    try:
        with open(source, "rb") as reader, open(part_path, "wb") as out:
            _stream(reader, out, hasher, 0, part, cancel)
    except IntegrityCheckFailedError:
        part_path.unlink(missing_ok=True)
        raise
    except FileNotFoundError as e:
        part_path.unlink(missing_ok=True)
        raise NetworkError(part.url, "file not found") from e


def _parse_content_range(header_value: str) -> int:
    match = _CONTENT_RANGE_RE.match(header_value.strip())
    if match is None:
        raise _RangeMismatch(f"invalid Content-Range {header_value!r}")
    return int(match.group(1))


def _download_with_resume(
    part: ArtifactPart, part_path: Path, cancel: CancelToken, timeout: float, attempts: int
) -> None:
    for attempt in range(1, attempts + 1):
        cancel.raise_if_cancelled(f"download of {part.resolved_file_name}")

        hasher, existing = _hash_existing(part_path, part.digest)
        if existing > part.size_bytes:
            logger.warning("Discarding oversized partial file %s", part_path)
            part_path.unlink()
            hasher, existing = _hash_existing(part_path, part.digest)
        if existing and existing == part.size_bytes:
            logger.debug("Partial file %s is already complete", part_path)
            return

        headers = {"User-Agent": USER_AGENT}
        if existing:
            headers["Range"] = f"bytes={existing}-"
        request = urllib.request.Request(part.url, headers=headers)

        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                status = getattr(response, "status", 200)
                if existing and status == 206:
                    start = _parse_content_range(response.headers.get("Content-Range", ""))
                    if start != existing:
                        raise _RangeMismatch(f"asked for byte {existing}, got {start}")
                    mode = "ab"
                    logger.info("Resuming %s at byte %d", part.resolved_file_name, existing)
                else:
                    if existing:
                        logger.info("Server ignored range for %s; restarting", part.resolved_file_name)
                    hasher, existing = new_hasher(part.digest), 0
                    mode = "wb"

                with open(part_path, mode) as out:
                    _stream(response, out, hasher, existing, part, cancel)
            return
        except IntegrityCheckFailedError:
            part_path.unlink(missing_ok=True)
            raise
        except _RangeMismatch as e:
            logger.warning("Bad resume response for %s (%s); restarting", part.url, e)
            part_path.unlink(missing_ok=True)
            if attempt >= attempts:
                raise NetworkError(part.url, f"resume failed: {e}") from e
        except (OSError, http.client.HTTPException) as e:
            if isinstance(e, urllib.error.HTTPError) and e.code == 416:
                logger.warning("Server rejected resume range for %s; restarting", part.url)
                part_path.unlink(missing_ok=True)
            elif not is_transient(e):
                raise NetworkError(part.url, _describe(e)) from e
            if attempt >= attempts:
                raise NetworkError(part.url, f"{_describe(e)} (after {attempts} attempts)") from e
            delay = backoff_delay(attempt)
            logger.warning(
                "Download attempt %d/%d for %s failed (%s); retrying in %.2fs",
                attempt,
                attempts,
                part.resolved_file_name,
                _describe(e),
                delay,
            )
            cancel.sleep(delay)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, urllib.error.HTTPError):
        return f"HTTP {exc.code} {exc.reason}"
    if isinstance(exc, urllib.error.URLError):
        return f"URL error: {exc.reason}"
    return f"{type(exc).__name__}: {exc}"


def _verify_part_file(part: ArtifactPart, part_path: Path) -> None:
    """Compare a completed .part file with the declared size and digest.

    The file is deleted on mismatch so that a retry starts clean.
    """
    hasher, size = _hash_existing(part_path, part.digest)
    name = part.resolved_file_name

    if size != part.size_bytes:
        part_path.unlink(missing_ok=True)
        raise IntegrityCheckFailedError(name, f"{part.size_bytes} bytes", f"{size} bytes")

    algorithm, _ = parse_digest(part.digest)
    actual = format_digest(algorithm, hasher.hexdigest())
    if not digests_equal(actual, part.digest):
        part_path.unlink(missing_ok=True)
        raise IntegrityCheckFailedError(name, part.digest, actual)


# --- Archive unpacking ---


def _check_entry_name(name: str) -> str:
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        raise UnsafeArchiveEntryError(name, "absolute path")
    if ".." in normalized.split("/"):
        raise UnsafeArchiveEntryError(name, "parent directory reference")
    return normalized


def _check_inside(root: Path, target: Path, entry: str, reason: str) -> None:
    if not target.resolve().is_relative_to(root):
        raise UnsafeArchiveEntryError(entry, reason)


def _check_link(root: Path, entry_path: Path, entry: str, link_target: str) -> None:
    normalized = link_target.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        raise UnsafeArchiveEntryError(entry, f"link to absolute path {link_target}")
    _check_inside(root, entry_path.parent / normalized, entry, f"link escapes target ({link_target})")


def _unpack_tar(archive: Path, dest: Path, cancel: CancelToken) -> int:
    root = dest.resolve()
    count = 0
    with tarfile.open(archive, "r:*") as tar:
        for member in tar:
            cancel.raise_if_cancelled(f"unpack of {archive.name}")
            name = _check_entry_name(member.name)
            target = dest / name
            _check_inside(root, target, member.name, "path escapes target")

            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.issym():
                _check_link(root, target, member.name, member.linkname)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(member.linkname, target)
            elif member.islnk():
                source = dest / _check_entry_name(member.linkname)
                _check_inside(root, source, member.name, f"hard link escapes target ({member.linkname})")
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                reader = tar.extractfile(member)
                with reader, open(target, "wb") as out:
                    shutil.copyfileobj(reader, out, DOWNLOAD_CHUNK_SIZE)
                if member.mode & 0o111:
                    target.chmod(0o755)
            else:
                raise UnsafeArchiveEntryError(member.name, "special file")
            count += 1
    return count


def _unpack_zip(archive: Path, dest: Path, cancel: CancelToken) -> int:
    root = dest.resolve()
    count = 0
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            cancel.raise_if_cancelled(f"unpack of {archive.name}")
            name = _check_entry_name(info.filename)
            target = dest / name
            _check_inside(root, target, info.filename, "path escapes target")
            mode = info.external_attr >> 16

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
            elif stat.S_ISLNK(mode):
                link_target = zf.read(info).decode("utf-8")
                _check_link(root, target, info.filename, link_target)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(link_target, target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as reader, open(target, "wb") as out:
                    shutil.copyfileobj(reader, out, DOWNLOAD_CHUNK_SIZE)
                if mode & 0o111:
                    target.chmod(0o755)
            count += 1
    return count


def unpack_archive(archive: str | Path, dest: str | Path, cancel: CancelToken | None = None) -> int:
    """Unpack a verified tar or zip archive into ``dest``.

    Returns:
        Number of entries extracted.

    Raises:
        UnsafeArchiveEntryError: Unsafe entry, or not a tar/zip archive.
        CancelledError: Token fired between entries.
    """
    cancel = ensure_token(cancel)
    archive = Path(archive)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)

    if zipfile.is_zipfile(archive):
        count = _unpack_zip(archive, dest, cancel)
    elif tarfile.is_tarfile(archive):
        count = _unpack_tar(archive, dest, cancel)
    else:
        raise UnsafeArchiveEntryError(archive.name, "not a tar or zip archive")

    logger.debug("Unpacked %d entries from %s into %s", count, archive.name, dest)
    return count


# --- Whole install ---


def _prepare_staging(staging_dir: Path) -> Path:
    """Reset staging, keeping only resumable .part files."""
    downloads = staging_dir / DOWNLOADS_SUBDIR
    remove_tree(staging_dir / INSTALL_SUBDIR)
    if downloads.exists():
        for entry in downloads.iterdir():
            if entry.is_file() and entry.name.endswith(PART_SUFFIX):
                continue
            remove_tree(entry)
    downloads.mkdir(parents=True, exist_ok=True)
    return downloads


def stage_install(
    selection: Selection,
    staging_dir: str | Path,
    cancel: CancelToken | None = None,
    offline: bool = False,
    timeout: float = 30.0,
) -> Path:
    """Fetch, verify and assemble every part of the selected artifact.

    Parts download concurrently on a bounded pool. The first failure
    cancels the remaining transfers and is re-raised.

    Args:
        selection: Selection from the artifact selector.
        staging_dir: Staging directory owned by this install.
        cancel: Parent cancellation token.
        offline: Refuse network URLs (checked for all parts before any transfer).
        timeout: Socket timeout per attempt, in seconds.

    Returns:
        Path to the assembled install tree, ready for publish_install().
    """
    cancel = ensure_token(cancel)
    staging_dir = Path(staging_dir)
    parts = selection.artifact.all_parts()

    names = [p.resolved_file_name for p in parts]
    if len(set(names)) != len(names):
        raise ManifestInvalidError(selection.artifact.url, f"parts share a file name: {names}")

    if offline:
        for part in parts:
            if is_network_source(part.url):
                raise OfflineRequiredError(part.url)

    downloads = _prepare_staging(staging_dir)
    tree = staging_dir / INSTALL_SUBDIR
    tree.mkdir(parents=True, exist_ok=True)

    token = cancel.child()
    fetched: dict[int, Path] = {}
    workers = max(1, min(MAX_PARALLEL_DOWNLOADS, len(parts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="speechctl-download") as pool:
        futures = {
            pool.submit(fetch_artifact, part, downloads, token, offline, timeout): index
            for index, part in enumerate(parts)
        }
        try:
            for future in as_completed(futures):
                fetched[futures[future]] = future.result()
        except BaseException:
            token.cancel("another part failed")
            raise

    for index, part in enumerate(parts):
        target_dir = tree / RUNTIME_SUBDIR if part.role == "runtime" else tree
        target_dir.mkdir(parents=True, exist_ok=True)
        path = fetched[index]
        if part.unpack_kind == "archive":
            unpack_archive(path, target_dir, token)
            path.unlink()
        else:
            placed = target_dir / path.name
            os.replace(path, placed)
            if part.role == "runtime":
                placed.chmod(0o755)

    logger.info("Staged %d part(s) for %s in %s", len(parts), selection.artifact.component, tree)
    return tree


def publish_install(staged_tree: str | Path, component_root: str | Path, release_version: str, digest: str) -> Path:
    """Rename a verified, receipted staged tree to a fresh versioned directory.

    Args:
        staged_tree: Assembled tree from stage_install(), receipt included.
        component_root: {models_dir}/{component}/{variant}.
        release_version: Manifest release version.
        digest: Digest of the primary artifact.

    Returns:
        The published directory.
    """
    maybe_fail("INSTALL_AFTER_VERIFY")
    final_dir = Path(component_root) / version_dir_name(release_version, digest)
    publish_directory(staged_tree, final_dir)
    logger.info("Published %s", final_dir)
    return final_dir
