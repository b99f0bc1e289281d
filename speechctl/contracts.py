"""speechctl - JSON Schema contracts.

Versioned Draft 2020-12 schemas live in speechctl/specs/*.schema.json and are
shipped with the package so manifests and receipts can be validated at
runtime.
"""

from __future__ import annotations

import json
from functools import cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

SPECS_DIR = Path(__file__).parent / "specs"

MANIFEST_SCHEMA = "manifest"
INSTALL_RECEIPT_SCHEMA = "install_receipt"


@cache
def load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema from the specs directory."""
    schema_path = SPECS_DIR / f"{name}.schema.json"
    with open(schema_path, encoding="utf-8") as f:
        return json.load(f)


@cache
def _validator(name: str) -> Draft202012Validator:
    schema = load_schema(name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def schema_errors(instance: Any, name: str) -> list[str]:
    """Validate ``instance`` against a named schema.

    Returns:
        Human-readable error messages, empty when valid. Messages are
        prefixed with the JSON path of the offending value.
    """
    errors = sorted(_validator(name).iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
    messages = []
    for error in errors:
        location = "/".join(str(p) for p in error.absolute_path) or "<root>"
        messages.append(f"{location}: {error.message}")
    return messages
