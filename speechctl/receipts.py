"""speechctl - Install receipts.

A receipt is a JSON copy of an install record written into the staged
directory before it is published, so every published directory describes
itself. Receipts are what `check` compares against the store and what
`check --repair` rebuilds the store from.

Receipt files carry a schemaVersion for forward compatibility and are
validated against specs/install_receipt.schema.json.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from speechctl.contracts import INSTALL_RECEIPT_SCHEMA, schema_errors
from speechctl.utils.atomic_io import atomic_write_text
from speechctl.utils.paths import receipt_path

logger = logging.getLogger(__name__)

RECEIPT_SCHEMA_VERSION = 1

__all__ = [
    "RECEIPT_SCHEMA_VERSION",
    "build_receipt",
    "save_receipt",
    "load_receipt",
]


def build_receipt(
    component: str,
    variant: str,
    release_version: str,
    digest: str,
    installed_at: datetime,
    device: str | None = None,
    unpack_kind: str | None = None,
    file_name: str | None = None,
    manifest_source: str | None = None,
) -> dict[str, Any]:
    """Build a receipt document from install record fields."""
    return {
        "schemaVersion": RECEIPT_SCHEMA_VERSION,
        "component": component,
        "variant": variant,
        "releaseVersion": release_version,
        "digest": digest,
        "device": device,
        "unpackKind": unpack_kind,
        "fileName": file_name,
        "manifestSource": manifest_source,
        "installedAt": installed_at.isoformat(),
    }


def save_receipt(install_dir: str | Path, receipt: dict[str, Any]) -> Path:
    """Atomically write a receipt into ``install_dir``.

    Args:
        install_dir: Staged (not yet published) install directory.
        receipt: Receipt document from build_receipt().

    Returns:
        Path of the written receipt.

    Raises:
        ValueError: If the receipt does not satisfy its schema.
    """
    errors = schema_errors(receipt, INSTALL_RECEIPT_SCHEMA)
    if errors:
        raise ValueError(f"Invalid install receipt: {'; '.join(errors)}")

    path = receipt_path(install_dir)
    atomic_write_text(path, json.dumps(receipt, indent=2, sort_keys=True) + "\n")
    logger.debug("Saved receipt to %s", path)
    return path


def load_receipt(install_dir: str | Path) -> dict[str, Any] | None:
    """Load the receipt stored inside a published directory.

    Returns None if the receipt is missing, unparseable, or fails schema
    validation. Callers treat such a directory as unverifiable.

    Args:
        install_dir: Published install directory.

    Returns:
        Receipt document if valid, None otherwise.
    """
    path = receipt_path(install_dir)

    if not path.exists():
        logger.debug("No receipt found at %s", path)
        return None

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to load receipt from %s: %s", path, e)
        return None

    errors = schema_errors(data, INSTALL_RECEIPT_SCHEMA)
    if errors:
        logger.warning("Receipt at %s is invalid: %s", path, "; ".join(errors))
        return None

    try:
        datetime.fromisoformat(data["installedAt"])
    except ValueError:
        logger.warning("Receipt at %s has unparseable installedAt %r", path, data["installedAt"])
        return None

    return data
