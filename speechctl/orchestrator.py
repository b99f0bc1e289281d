"""speechctl - Installer orchestrator.

Drives one install from manifest to published directory and exposes the
programmatic surface used by the CLI: install(), check(), list_installed().

State machine (every transition is logged, illegal transitions raise):

    IDLE -> MANIFEST_RESOLVED -> ARTIFACT_SELECTED -> UP_TO_DATE -> DONE
                                                   -> DOWNLOADING -> VERIFYING -> PUBLISHING -> DONE

FAILED is reachable from every non-terminal state.

Publish protocol:
1. Stage and verify every part under .speechctl/staging/{component}-{variant}
2. Write the receipt into the staged tree
3. Rename the tree to a fresh {component}/{variant}/{release}-{digest12}-{nonce}
4. Commit the install record (the publish boundary)
5. Remove superseded version directories, repoint the runtime link

A crash before step 4 leaves the previous record (and its directory)
untouched; the orphaned directory is collected by the next install of the
same key.

Per-key serialization uses an install_locks row with a TTL. A second
invocation for the same key waits for the lock, then re-reads the record
and normally finds the install up to date. Stale locks (past TTL) are
reclaimed. While held, the lock is renewed every third of its TTL, and the
record commit re-checks ownership in the same transaction, so a holder whose
lock was taken over fails with LockLostError instead of recording.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
import uuid
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.exc import DatabaseError, IntegrityError

from services.artifact_selector.policy import Selection, select_artifact
from services.manifest_fetcher.fetch import fetch_manifest
from services.worker_download.run import publish_install, stage_install
from speechctl.config import BIN_DIR_NAME, LOCK_POLL_INTERVAL_SECONDS, Config, load_config
from speechctl.db import (
    create_install_lock,
    delete_install_lock,
    find_install_lock,
    get_install,
    is_busy_error,
    list_installs,
    open_store,
    reclaim_install_lock,
    record_install,
    renew_install_lock,
    repair_store,
)
from speechctl.errors import LockLostError, LockTimeoutError, StoreCorruptError, UsageError
from speechctl.models import InstallRecord, ensure_utc, utc_now
from speechctl.platform_facts import detect_platform_facts
from speechctl.receipts import build_receipt, load_receipt, save_receipt
from speechctl.schemas import (
    COMPONENTS,
    CheckResult,
    ComponentStatus,
    InstallRecordView,
    InstallResult,
    Manifest,
    PlatformFacts,
)
from speechctl.utils.atomic_io import cleanup_orphan_temp_files, remove_tree, replace_symlink
from speechctl.utils.cancel import CancelToken, ensure_token
from speechctl.utils.failpoints import maybe_fail
from speechctl.utils.hashing import digests_equal, file_digest, format_digest, parse_digest
from speechctl.utils.paths import (
    RUNTIME_SUBDIR,
    component_dir,
    runtime_link_path,
    staging_dir,
    variant_dir_name,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


# --- State Machine ---


class InstallState(StrEnum):
    IDLE = "idle"
    MANIFEST_RESOLVED = "manifest_resolved"
    ARTIFACT_SELECTED = "artifact_selected"
    UP_TO_DATE = "up_to_date"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.IDLE: frozenset({InstallState.MANIFEST_RESOLVED}),
    InstallState.MANIFEST_RESOLVED: frozenset({InstallState.ARTIFACT_SELECTED}),
    InstallState.ARTIFACT_SELECTED: frozenset({InstallState.UP_TO_DATE, InstallState.DOWNLOADING}),
    InstallState.UP_TO_DATE: frozenset({InstallState.DONE}),
    InstallState.DOWNLOADING: frozenset({InstallState.VERIFYING}),
    InstallState.VERIFYING: frozenset({InstallState.PUBLISHING}),
    InstallState.PUBLISHING: frozenset({InstallState.DONE}),
    InstallState.DONE: frozenset(),
    InstallState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({InstallState.DONE, InstallState.FAILED})


class InstallStateMachine:
    """Tracks the state of one install and rejects illegal transitions."""

    def __init__(self, component: str):
        self.component = component
        self.state = InstallState.IDLE

    def advance(self, new_state: InstallState) -> None:
        if new_state == InstallState.FAILED:
            allowed = self.state not in TERMINAL_STATES
        else:
            allowed = new_state in _TRANSITIONS[self.state]
        if not allowed:
            raise RuntimeError(
                f"Illegal install transition for {self.component}: {self.state} -> {new_state}"
            )
        logger.info("install %s: %s -> %s", self.component, self.state, new_state)
        self.state = new_state

    def fail(self, error: BaseException) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.warning("install %s failed in %s: %s", self.component, self.state, error)
        self.advance(InstallState.FAILED)


# --- Install Locks ---


def _try_acquire_lock(
    session: Session, component: str, variant: str, holder_id: str, ttl_seconds: float
) -> bool:
    existing_lock = find_install_lock(session, component, variant)

    if existing_lock is not None:
        # SQLite returns naive datetimes
        expires_at = ensure_utc(existing_lock.expires_at)
        if expires_at > utc_now():
            logger.debug("Active install lock for %s/%s held by %s", component, variant, existing_lock.holder_id)
            return False
        logger.info(
            "Reclaiming stale install lock for %s/%s from %s (expired at %s)",
            component,
            variant,
            existing_lock.holder_id,
            existing_lock.expires_at,
        )
        if not reclaim_install_lock(session, existing_lock):
            return False

    create_install_lock(session, component, variant, holder_id, ttl_seconds)
    return True


def acquire_install_lock(
    SessionFactory: sessionmaker,
    config: Config,
    component: str,
    variant: str,
    cancel: CancelToken | None = None,
) -> str:
    """Acquire the per-key install lock, waiting up to config.lock_wait_seconds.

    Returns:
        Holder id to pass to release_install_lock().

    Raises:
        LockTimeoutError: If the lock stays held past the wait limit.
        CancelledError: If the token fires while waiting.
    """
    cancel = ensure_token(cancel)
    holder_id = f"speechctl-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    started = time.monotonic()
    waiting_logged = False

    while True:
        session = SessionFactory()
        try:
            if _try_acquire_lock(session, component, variant, holder_id, config.lock_ttl_seconds):
                session.commit()
                logger.debug("Acquired install lock %s for %s/%s", holder_id, component, variant)
                return holder_id
            session.rollback()
        except IntegrityError:
            # Another process inserted the lock between our read and write
            session.rollback()
        except DatabaseError as e:
            session.rollback()
            if not is_busy_error(e):
                raise
        finally:
            session.close()

        waited = time.monotonic() - started
        if waited >= config.lock_wait_seconds:
            raise LockTimeoutError(component, variant, waited)
        if not waiting_logged:
            logger.info("Waiting for another install of %s/%s to finish", component, variant_dir_name(variant))
            waiting_logged = True
        cancel.sleep(LOCK_POLL_INTERVAL_SECONDS)


def release_install_lock(SessionFactory: sessionmaker, component: str, variant: str, holder_id: str) -> None:
    """Release the per-key install lock if ``holder_id`` still owns it."""
    session = SessionFactory()
    try:
        if not delete_install_lock(session, component, variant, holder_id):
            logger.warning("Install lock for %s/%s was no longer held by %s", component, variant, holder_id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class InstallLockKeeper:
    """Keeps a held install lock from going stale until the with-block exits.

    A daemon thread renews expires_at every ttl/3. ``lost`` is set once
    another invocation has taken the lock over.
    """

    def __init__(self, SessionFactory: sessionmaker, config: Config, component: str, variant: str, holder_id: str):
        self.SessionFactory = SessionFactory
        self.component = component
        self.variant = variant
        self.holder_id = holder_id
        self.ttl_seconds = config.lock_ttl_seconds
        self.lost = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"install-lock-{component}-{variant_dir_name(variant)}",
            daemon=True,
        )

    def __enter__(self) -> InstallLockKeeper:
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        self._thread.join()

    def renew(self, session: Session) -> None:
        """Extend the lock within ``session``'s transaction.

        Raises:
            LockLostError: If the lock is no longer ours.
        """
        if not renew_install_lock(session, self.component, self.variant, self.holder_id, self.ttl_seconds):
            self.lost.set()
            raise LockLostError(self.component, variant_dir_name(self.variant))

    def _run(self) -> None:
        while not self._stop.wait(self.ttl_seconds / 3):
            session = self.SessionFactory()
            try:
                self.renew(session)
                session.commit()
            except LockLostError as e:
                session.rollback()
                logger.error("%s", e.message)
                return
            except DatabaseError as e:
                session.rollback()
                logger.warning("Could not renew install lock for %s/%s: %s", self.component, self.variant, e)
            finally:
                session.close()


# --- Install ---


def _resolve_config(config: Config | None, dest: str | Path | None, manifest_url: str | None) -> Config:
    if config is None:
        return load_config(dest=dest, manifest_url=manifest_url)
    config = dataclasses.replace(
        config,
        models_dir=config.models_dir.expanduser().resolve(),
        bin_dir=config.bin_dir.expanduser().resolve(),
    )
    if dest is not None:
        models_dir = Path(dest).expanduser().resolve()
        bin_dir = config.bin_dir
        if bin_dir == config.models_dir / BIN_DIR_NAME:
            bin_dir = models_dir / BIN_DIR_NAME
        config = dataclasses.replace(config, models_dir=models_dir, bin_dir=bin_dir)
    if manifest_url is not None:
        config = dataclasses.replace(config, manifest_url=manifest_url)
    return config


def _collect_orphans(root: Path, keep: str | None) -> int:
    """Remove version directories under ``root`` that no record points at."""
    if not root.is_dir():
        return 0
    keep_path = Path(keep).resolve() if keep is not None else None
    removed = 0
    for entry in root.iterdir():
        if entry.resolve() == keep_path:
            continue
        if entry.is_dir() and remove_tree(entry):
            logger.info("Removed orphaned install directory %s", entry)
            removed += 1
    return removed


def _link_runtime(config: Config, component: str, variant: str, install_dir: Path, warnings: list[str]) -> None:
    runtime_dir = install_dir / RUNTIME_SUBDIR
    if not runtime_dir.is_dir():
        return
    link = runtime_link_path(config, component, variant)
    cleanup_orphan_temp_files(config.bin_dir)
    try:
        replace_symlink(runtime_dir, link)
        logger.debug("Linked %s -> %s", link, runtime_dir)
    except OSError as e:
        message = f"Could not link runtime for {component}/{variant_dir_name(variant)} at {link}: {e}"
        logger.warning(message)
        warnings.append(message)


def _read_record(SessionFactory: sessionmaker, component: str, variant: str) -> InstallRecord | None:
    session = SessionFactory()
    try:
        return get_install(session, component, variant)
    finally:
        session.close()


def _commit_record(SessionFactory: sessionmaker, record: InstallRecord, keeper: InstallLockKeeper) -> bool:
    session = SessionFactory()
    try:
        keeper.renew(session)
        changed = record_install(session, record)
        session.commit()
        return changed
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _install_locked(
    SessionFactory: sessionmaker,
    config: Config,
    machine: InstallStateMachine,
    manifest: Manifest,
    manifest_source: str,
    selection: Selection,
    upgrade: bool,
    offline: bool,
    cancel: CancelToken,
    keeper: InstallLockKeeper,
) -> InstallResult:
    artifact = selection.artifact
    component = artifact.component
    variant = selection.variant.variant
    warnings = list(selection.warnings)
    root = component_dir(config, component, variant)

    existing = _read_record(SessionFactory, component, variant)
    _collect_orphans(root, keep=existing.install_path if existing is not None else None)

    if (
        existing is not None
        and not upgrade
        and digests_equal(existing.digest, artifact.digest)
        and Path(existing.install_path).is_dir()
    ):
        machine.advance(InstallState.UP_TO_DATE)
        _link_runtime(config, component, variant, Path(existing.install_path), warnings)
        machine.advance(InstallState.DONE)
        return InstallResult(
            status="up_to_date",
            component=component,
            variant=variant,
            version=existing.release_version,
            installed_path=existing.install_path,
            digest=existing.digest,
            device=existing.device or selection.device.device,
            warnings=warnings,
        )

    staging = staging_dir(config, component, variant)
    machine.advance(InstallState.DOWNLOADING)
    try:
        tree = stage_install(selection, staging, cancel, offline, config.http_timeout_seconds)

        machine.advance(InstallState.VERIFYING)
        cancel.raise_if_cancelled("verify")
        installed_at = utc_now()
        receipt = build_receipt(
            component=component,
            variant=variant,
            release_version=manifest.release_version,
            digest=artifact.digest,
            installed_at=installed_at,
            device=selection.device.device,
            unpack_kind=artifact.unpack_kind,
            file_name=artifact.resolved_file_name,
            manifest_source=manifest_source,
        )
        save_receipt(tree, receipt)

        machine.advance(InstallState.PUBLISHING)
        if keeper.lost.is_set():
            raise LockLostError(component, variant_dir_name(variant))
        final_dir = publish_install(tree, root, manifest.release_version, artifact.digest)
        maybe_fail("INSTALL_AFTER_PUBLISH_BEFORE_RECORD")
        try:
            _commit_record(
                SessionFactory,
                InstallRecord(
                    component=component,
                    variant=variant,
                    release_version=manifest.release_version,
                    digest=artifact.digest,
                    install_path=str(final_dir),
                    device=selection.device.device,
                    unpack_kind=artifact.unpack_kind,
                    file_name=artifact.resolved_file_name,
                    manifest_source=manifest_source,
                    installed_at=installed_at,
                ),
                keeper,
            )
        except BaseException:
            remove_tree(final_dir)
            raise
        maybe_fail("INSTALL_AFTER_RECORD")
    finally:
        # A taken-over lock means the staging tree now belongs to the new holder
        if not keeper.lost.is_set():
            remove_tree(staging)

    if existing is not None and Path(existing.install_path).resolve() != final_dir.resolve():
        remove_tree(existing.install_path)
    _link_runtime(config, component, variant, final_dir, warnings)
    machine.advance(InstallState.DONE)

    if existing is None:
        status = "installed"
    elif digests_equal(existing.digest, artifact.digest):
        status = "reinstalled"
    else:
        status = "upgraded"

    return InstallResult(
        status=status,
        component=component,
        variant=variant,
        version=manifest.release_version,
        installed_path=str(final_dir),
        digest=artifact.digest,
        device=selection.device.device,
        warnings=warnings,
    )


def install(
    component: str,
    dest: str | Path | None = None,
    device: str = "auto",
    variant: str = "",
    manifest_url: str | None = None,
    offline: bool = False,
    upgrade: bool = False,
    config: Config | None = None,
    cancel: CancelToken | None = None,
    facts: PlatformFacts | None = None,
) -> InstallResult:
    """Install (or confirm) the artifact for ``component`` on this host.

    Args:
        component: "stt" or "tts".
        dest: Install root override (SPEECH_MODELS_DIR otherwise).
        device: "auto", "cpu" or "gpu".
        variant: Model (stt) or voice (tts) name, "" for the manifest default.
        manifest_url: Manifest source override (URL, file:// URL or path).
        offline: Fail instead of touching the network.
        upgrade: Download even when the recorded install matches.
        config: Explicit configuration; loaded from the environment if None.
        cancel: Cancellation token (signals, --timeout).
        facts: Platform facts; probed from the host if None.

    Returns:
        InstallResult describing what happened.
    """
    if component not in COMPONENTS:
        raise UsageError(f"Unknown component '{component}' (expected stt or tts)")

    config = _resolve_config(config, dest, manifest_url)
    cancel = ensure_token(cancel)
    facts = facts or detect_platform_facts()
    source = config.manifest_url
    machine = InstallStateMachine(component)

    try:
        engine, SessionFactory = open_store(config)
    except BaseException as e:
        machine.fail(e)
        raise

    try:
        manifest = fetch_manifest(source, offline=offline, cancel=cancel, timeout=config.http_timeout_seconds)
        machine.advance(InstallState.MANIFEST_RESOLVED)

        selection = select_artifact(manifest, facts, device, variant, component)
        machine.advance(InstallState.ARTIFACT_SELECTED)

        resolved_variant = selection.variant.variant
        holder_id = acquire_install_lock(SessionFactory, config, component, resolved_variant, cancel)
        try:
            with InstallLockKeeper(SessionFactory, config, component, resolved_variant, holder_id) as keeper:
                result = _install_locked(
                    SessionFactory, config, machine, manifest, source, selection, upgrade, offline, cancel, keeper
                )
        finally:
            release_install_lock(SessionFactory, component, resolved_variant, holder_id)
    except BaseException as e:
        machine.fail(e)
        raise
    finally:
        engine.dispose()

    logger.info(
        "install %s/%s: %s (%s) at %s",
        result.component,
        variant_dir_name(result.variant),
        result.status,
        result.version,
        result.installed_path,
    )
    return result


# --- Check / List ---


def _check_record(record: InstallRecord) -> ComponentStatus:
    install_dir = Path(record.install_path)
    problem = None

    if not install_dir.is_dir():
        problem = "install directory is missing"
    else:
        receipt = load_receipt(install_dir)
        if receipt is None:
            problem = "install receipt is missing or invalid"
        elif (
            receipt["component"] != record.component
            or receipt["variant"] != record.variant
            or receipt["releaseVersion"] != record.release_version
            or not digests_equal(receipt["digest"], record.digest)
        ):
            problem = "install receipt does not match the install record"
        elif record.unpack_kind == "file" and record.file_name:
            problem = _check_file_digest(install_dir / record.file_name, record.digest)

    if problem:
        logger.warning("check %s/%s: %s", record.component, variant_dir_name(record.variant), problem)

    return ComponentStatus(
        component=record.component,
        variant=record.variant,
        version=record.release_version,
        ok=problem is None,
        install_path=record.install_path,
        problem=problem,
    )


def _check_file_digest(path: Path, expected: str) -> str | None:
    if not path.is_file():
        return f"artifact file {path.name} is missing"
    algorithm, _ = parse_digest(expected)
    actual = format_digest(algorithm, file_digest(path, algorithm))
    if not digests_equal(actual, expected):
        return f"artifact file {path.name} digest mismatch (expected {expected}, got {actual})"
    return None


def check(config: Config | None = None, repair: bool = False) -> CheckResult:
    """Verify every recorded install against its directory and receipt.

    Args:
        config: Explicit configuration; loaded from the environment if None.
        repair: Rebuild a corrupt store from install receipts.

    Raises:
        StoreCorruptError: If the store is unreadable and repair is False.
    """
    config = _resolve_config(config, None, None)
    if not config.state_db_path.exists():
        return CheckResult()

    repaired = False
    try:
        engine, SessionFactory = open_store(config)
    except StoreCorruptError:
        if not repair:
            raise
        rebuilt = repair_store(config)
        logger.warning("Rebuilt install store with %d record(s) from receipts", rebuilt)
        repaired = True
        engine, SessionFactory = open_store(config)

    try:
        session = SessionFactory()
        try:
            records = list_installs(session)
        finally:
            session.close()
    finally:
        engine.dispose()

    return CheckResult(components=[_check_record(r) for r in records], repaired=repaired)


def list_installed(config: Config | None = None) -> list[InstallRecordView]:
    """Return every install record, ordered by (component, variant)."""
    config = _resolve_config(config, None, None)
    if not config.state_db_path.exists():
        return []

    engine, SessionFactory = open_store(config)
    try:
        session = SessionFactory()
        try:
            records = list_installs(session)
        finally:
            session.close()
    finally:
        engine.dispose()

    return [
        InstallRecordView(
            component=r.component,
            variant=r.variant,
            release_version=r.release_version,
            digest=r.digest,
            install_path=r.install_path,
            installed_at=ensure_utc(r.installed_at),
            device=r.device,
            unpack_kind=r.unpack_kind,
        )
        for r in records
    ]
