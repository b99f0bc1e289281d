"""speechctl - Install store: engine, session management and primitives.

SQLAlchemy sync engine/session factory for the SQLite install store at
{models_dir}/.speechctl/state.db. SQLite transactions make every write
all-or-nothing: readers see either the old or the new complete state.

The store is an external resource acquired per operation via open_store();
there is no module-level engine or session.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import Engine, create_engine, delete, select, text, update
from sqlalchemy.exc import DatabaseError
from sqlalchemy.orm import Session, sessionmaker

from speechctl.config import Config
from speechctl.errors import StoreCorruptError
from speechctl.models import Base, InstallLock, InstallRecord, utc_now
from speechctl.receipts import load_receipt
from speechctl.schemas import COMPONENTS

logger = logging.getLogger(__name__)

# Fields compared by record_install() to decide whether a write is a no-op
_RECORD_FIELDS = (
    "release_version",
    "digest",
    "install_path",
    "device",
    "unpack_kind",
    "file_name",
    "manifest_source",
)


def get_database_url(db_path: str | Path) -> str:
    """Get SQLite database URL."""
    return f"sqlite:///{db_path}"


def create_db_engine(db_path: str | Path, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine.

    Args:
        db_path: Path to the database file.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    return create_engine(
        get_database_url(db_path),
        echo=echo,
        # One session per unit of work, never shared across threads.
        # timeout: how long SQLite waits on another writer before "database is locked".
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine."""
    # - autoflush=False: explicit flush control for deterministic primitives
    # - expire_on_commit=False: objects remain usable post-commit
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | Path, echo: bool = False) -> tuple[Engine, sessionmaker]:
    """Initialize the database: create engine, session factory, and all tables.

    Idempotent - safe to call multiple times.

    Returns:
        Tuple of (engine, SessionFactory).
    """
    engine = create_db_engine(db_path, echo=echo)
    SessionFactory = create_session_factory(engine)

    Base.metadata.create_all(engine)

    return engine, SessionFactory


def is_busy_error(error: DatabaseError) -> bool:
    return "locked" in str(error).lower() or "busy" in str(error).lower()


def _verify_store(SessionFactory: sessionmaker) -> None:
    """Read from every table so that damage surfaces now, not mid-install."""
    session = SessionFactory()
    try:
        result = session.execute(text("PRAGMA quick_check")).scalar()
        if result != "ok":
            raise DatabaseError("PRAGMA quick_check", None, Exception(str(result)))
        session.execute(select(InstallRecord).limit(1)).all()
        session.execute(select(InstallLock).limit(1)).all()
    finally:
        session.close()


def create_store_file(db_path: Path) -> bool:
    """Create the store at ``db_path`` with its full schema, unless one exists.

    The schema is built in a private temp file which is then hard-linked to
    ``db_path``. The link fails if another invocation got there first, so
    ``db_path`` only ever appears complete.

    Returns:
        True if this call created the store.
    """
    temp_path = db_path.with_name(f".{db_path.name}.{os.getpid()}-{uuid.uuid4().hex[:8]}.tmp")
    engine, _ = init_db(temp_path)
    engine.dispose()
    try:
        os.link(temp_path, db_path)
    except FileExistsError:
        logger.debug("Install store %s was created by another invocation", db_path)
        return False
    finally:
        temp_path.unlink(missing_ok=True)
    logger.info("Created install store %s", db_path)
    return True


def open_store(config: Config) -> tuple[Engine, sessionmaker]:
    """Open (creating if needed) the install store for ``config``.

    Raises:
        StoreCorruptError: If the store file exists but cannot be read.
            The store is never silently replaced with an empty one.
    """
    db_path = config.state_db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if not db_path.exists():
        create_store_file(db_path)
    elif db_path.stat().st_size == 0:
        raise StoreCorruptError(str(db_path), "file is empty")

    engine = None
    try:
        engine, SessionFactory = init_db(db_path)
        _verify_store(SessionFactory)
    except DatabaseError as e:
        if engine is not None:
            engine.dispose()
        if is_busy_error(e):
            raise
        raise StoreCorruptError(str(db_path), str(getattr(e, "orig", None) or e)) from e

    return engine, SessionFactory


# --- Install Record Primitives ---


def get_install(session: Session, component: str, variant: str) -> InstallRecord | None:
    """Get the active install record for a key, if any."""
    stmt = select(InstallRecord).where(
        InstallRecord.component == component,
        InstallRecord.variant == variant,
    )
    return session.execute(stmt).scalar_one_or_none()


def list_installs(session: Session) -> list[InstallRecord]:
    """List all install records ordered by (component, variant)."""
    stmt = select(InstallRecord).order_by(InstallRecord.component, InstallRecord.variant)
    return list(session.execute(stmt).scalars())


def record_install(session: Session, record: InstallRecord) -> bool:
    """Record an install, replacing the prior record for the same key.

    The only mutator of install records. Idempotent: recording a record
    identical to the stored one is a no-op.

    Note:
        This function does NOT commit the transaction. It calls session.flush()
        and leaves commit responsibility to the caller. The commit is the
        publish boundary of an install.

    Args:
        session: Active database session.
        record: Transient InstallRecord carrying the new values.

    Returns:
        True if the store changed, False if it was a no-op.
    """
    existing = get_install(session, record.component, record.variant)

    if existing is None:
        if record.installed_at is None:
            record.installed_at = utc_now()
        session.add(record)
        session.flush()
        return True

    if all(getattr(existing, f) == getattr(record, f) for f in _RECORD_FIELDS):
        return False

    for f in _RECORD_FIELDS:
        setattr(existing, f, getattr(record, f))
    existing.installed_at = record.installed_at or utc_now()
    session.flush()
    return True


# --- Install Lock Primitives ---


def find_install_lock(session: Session, component: str, variant: str) -> InstallLock | None:
    """Find the lock row for a key, if any."""
    stmt = select(InstallLock).where(
        InstallLock.component == component,
        InstallLock.variant == variant,
    )
    return session.execute(stmt).scalar_one_or_none()


def create_install_lock(
    session: Session,
    component: str,
    variant: str,
    holder_id: str,
    ttl_seconds: float,
) -> InstallLock:
    """Create a new InstallLock with expires_at = now + TTL.

    Does NOT handle contention (existing locks, reclamation) - that belongs
    in the orchestrator. A concurrent insert for the same key fails with
    IntegrityError on flush.

    Note:
        This function does NOT commit the transaction.
    """
    now = utc_now()
    lock = InstallLock(
        component=component,
        variant=variant,
        holder_id=holder_id,
        acquired_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    session.add(lock)
    session.flush()
    return lock


def renew_install_lock(
    session: Session,
    component: str,
    variant: str,
    holder_id: str,
    ttl_seconds: float,
) -> bool:
    """Push expires_at to now + TTL if ``holder_id`` still owns the lock.

    A single UPDATE, so ownership is checked and extended in one statement
    and the transaction stays open for the caller's other writes.

    Returns:
        False if the lock is gone or owned by another holder.

    Note:
        This function does NOT commit the transaction.
    """
    stmt = (
        update(InstallLock)
        .where(
            InstallLock.component == component,
            InstallLock.variant == variant,
            InstallLock.holder_id == holder_id,
        )
        .values(expires_at=utc_now() + timedelta(seconds=ttl_seconds))
    )
    return session.execute(stmt).rowcount == 1


def reclaim_install_lock(session: Session, lock: InstallLock) -> bool:
    """Delete a stale ``lock`` unless its holder renewed it since it was read.

    Returns:
        True if the row was deleted.

    Note:
        This function does NOT commit the transaction.
    """
    stmt = delete(InstallLock).where(
        InstallLock.component == lock.component,
        InstallLock.variant == lock.variant,
        InstallLock.holder_id == lock.holder_id,
        InstallLock.expires_at == lock.expires_at,
    ).execution_options(synchronize_session=False)
    return session.execute(stmt).rowcount == 1


def delete_install_lock(session: Session, component: str, variant: str, holder_id: str) -> bool:
    """Delete the lock for a key if ``holder_id`` still owns it.

    Note:
        This function does NOT commit the transaction.
    """
    lock = find_install_lock(session, component, variant)
    if lock is None or lock.holder_id != holder_id:
        return False
    session.delete(lock)
    session.flush()
    return True


# --- Repair ---


def _parse_installed_at(receipt: dict) -> datetime:
    return datetime.fromisoformat(receipt["installedAt"])


def repair_store(config: Config) -> int:
    """Rebuild a corrupt store from the receipts of published installs.

    The unreadable file is kept as state.db.corrupt-<timestamp> for
    inspection. For each (component, variant) directory the newest valid
    receipt wins.

    Returns:
        Number of install records rebuilt.
    """
    db_path = config.state_db_path
    if db_path.exists():
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        aside = db_path.with_name(f"{db_path.name}.corrupt-{stamp}")
        os.replace(db_path, aside)
        logger.warning("Moved unreadable install store %s to %s", db_path, aside)
        for suffix in ("-journal", "-wal", "-shm"):
            sidecar = db_path.with_name(db_path.name + suffix)
            if sidecar.exists():
                os.replace(sidecar, aside.with_name(aside.name + suffix))

    db_path.parent.mkdir(parents=True, exist_ok=True)
    create_store_file(db_path)
    engine, SessionFactory = init_db(db_path)
    session = SessionFactory()
    rebuilt = 0
    try:
        for component in COMPONENTS:
            component_root = config.models_dir / component
            if not component_root.is_dir():
                continue
            for variant_dir in sorted(p for p in component_root.iterdir() if p.is_dir()):
                best: tuple[dict, Path] | None = None
                for version_dir in variant_dir.iterdir():
                    if not version_dir.is_dir():
                        continue
                    receipt = load_receipt(version_dir)
                    if receipt is None or receipt["component"] != component:
                        continue
                    if best is None or _parse_installed_at(receipt) > _parse_installed_at(best[0]):
                        best = (receipt, version_dir)
                if best is None:
                    continue

                receipt, version_dir = best
                record_install(
                    session,
                    InstallRecord(
                        component=receipt["component"],
                        variant=receipt["variant"],
                        release_version=receipt["releaseVersion"],
                        digest=receipt["digest"],
                        install_path=str(version_dir),
                        device=receipt.get("device"),
                        unpack_kind=receipt.get("unpackKind"),
                        file_name=receipt.get("fileName"),
                        manifest_source=receipt.get("manifestSource"),
                        installed_at=_parse_installed_at(receipt),
                    ),
                )
                rebuilt += 1
                logger.info(
                    "Rebuilt record %s/%s -> %s", component, receipt["variant"], version_dir
                )
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        engine.dispose()

    return rebuilt
