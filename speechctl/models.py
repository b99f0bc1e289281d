"""speechctl - SQLAlchemy ORM models.

Install store tables:
1. install_records
2. install_locks
"""

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class InstallRecord(Base):
    """One active install per (component, variant).

    Corresponds to install_receipt.schema.json (the receipt is a copy of
    this row stored inside the published directory).
    """

    __tablename__ = "install_records"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Install key
    component: Mapped[str] = mapped_column(String(16), nullable=False)
    variant: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    # What is installed
    release_version: Mapped[str] = mapped_column(String(64), nullable=False)
    digest: Mapped[str] = mapped_column(String(160), nullable=False)
    install_path: Mapped[str] = mapped_column(Text, nullable=False)
    device: Mapped[str | None] = mapped_column(String(16), nullable=True)
    unpack_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Where the manifest came from (for diagnostics)
    manifest_source: Mapped[str | None] = mapped_column(Text, nullable=True)

    installed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("component", "variant", name="uq_install_key"),
    )


class InstallLock(Base):
    """Exclusive lock for installs targeting one (component, variant).

    TTL reclamation: locks with expires_at < now belong to a crashed
    invocation and can be reclaimed.
    """

    __tablename__ = "install_locks"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Lock key
    component: Mapped[str] = mapped_column(String(16), nullable=False)
    variant: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    # Lock holder
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)

    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("component", "variant", name="uq_install_lock_key"),
        Index("ix_install_locks_expires_at", "expires_at"),
    )
