"""speechctl - Manifest Fetcher.

Retrieves a release manifest from an HTTP(S) URL, a file:// URL or a local
path, then validates and parses it. Pure fetch-and-parse: nothing is
persisted.

Retry policy:
- Up to FETCH_ATTEMPTS attempts, exponential backoff with full jitter
- Transient failures (connection errors, timeouts, HTTP 5xx/429) are retried
- Structural failures (HTTP 4xx, invalid JSON, schema violations,
  unsupported schemaVersion) fail immediately

Offline: a network source with offline=True fails with OFFLINE_REQUIRED
before any connection is attempted.

Error codes:
- OFFLINE_REQUIRED: network source while offline
- NETWORK_ERROR: retries exhausted or non-retryable HTTP status
- UNSUPPORTED_MANIFEST: schemaVersion not understood by this engine
- MANIFEST_INVALID: unreadable, malformed or schema-violating document
"""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import Any

from pydantic import ValidationError

from speechctl import __version__
from speechctl.config import FETCH_ATTEMPTS, SUPPORTED_MANIFEST_SCHEMA_VERSIONS
from speechctl.contracts import MANIFEST_SCHEMA, schema_errors
from speechctl.errors import (
    ManifestInvalidError,
    NetworkError,
    OfflineRequiredError,
    UnsupportedManifestError,
)
from speechctl.schemas import Manifest
from speechctl.utils.cancel import CancelToken, ensure_token
from speechctl.utils.retry import backoff_delay, is_transient
from speechctl.utils.urls import is_network_source, resolve_location, to_local_path

logger = logging.getLogger(__name__)

USER_AGENT = f"speechctl/{__version__}"


def fetch_manifest(
    source: str,
    offline: bool = False,
    cancel: CancelToken | None = None,
    timeout: float = 30.0,
    attempts: int = FETCH_ATTEMPTS,
) -> Manifest:
    """Fetch and parse a manifest.

    Args:
        source: http(s) URL, file:// URL, or local path.
        offline: Fail fast if the source requires the network.
        cancel: Cancellation token checked before each attempt and during backoff.
        timeout: Socket timeout per attempt, in seconds.
        attempts: Total attempts for transient network failures.

    Returns:
        Parsed Manifest with artifact URLs resolved against ``source``.
    """
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled("manifest fetch")

    if is_network_source(source):
        if offline:
            raise OfflineRequiredError(source)
        raw = _download_with_retry(source, timeout, attempts, cancel)
    else:
        raw = _read_local(source)

    manifest = parse_manifest(raw, source)
    logger.info(
        "Loaded manifest %s (release %s, %d artifacts)",
        source,
        manifest.release_version,
        len(manifest.artifacts),
    )
    return manifest


def _read_local(source: str) -> bytes:
    try:
        path = to_local_path(source)
        return path.read_bytes()
    except ValueError as e:
        raise ManifestInvalidError(source, str(e)) from e
    except OSError as e:
        raise ManifestInvalidError(source, f"cannot read file: {e}") from e


def _download_with_retry(url: str, timeout: float, attempts: int, cancel: CancelToken) -> bytes:
    request = urllib.request.Request(
        url, headers={"Accept": "application/json", "User-Agent": USER_AGENT}
    )
    for attempt in range(1, attempts + 1):
        cancel.raise_if_cancelled("manifest fetch")
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return response.read()
        except (OSError, http.client.HTTPException) as e:
            if not is_transient(e):
                raise NetworkError(url, _describe(e)) from e
            if attempt >= attempts:
                raise NetworkError(url, f"{_describe(e)} (after {attempts} attempts)") from e
            delay = backoff_delay(attempt)
            logger.warning(
                "Manifest fetch attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                attempts,
                _describe(e),
                delay,
            )
            cancel.sleep(delay)

    raise NetworkError(url, "no attempts made")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, urllib.error.HTTPError):
        return f"HTTP {exc.code} {exc.reason}"
    if isinstance(exc, urllib.error.URLError):
        return f"URL error: {exc.reason}"
    return f"{type(exc).__name__}: {exc}"


def parse_manifest(raw: bytes | str, source: str = "<memory>") -> Manifest:
    """Validate and parse a manifest document.

    schemaVersion is checked before anything else so that a future format
    is rejected outright instead of being partially parsed.

    Args:
        raw: Manifest document (JSON).
        source: Location of the document; relative artifact URLs resolve
            against it.

    Returns:
        Parsed Manifest.
    """
    try:
        doc = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestInvalidError(source, f"not valid JSON: {e}") from e

    if not isinstance(doc, dict):
        raise ManifestInvalidError(source, f"expected a JSON object, got {type(doc).__name__}")

    schema_version = doc.get("schemaVersion")
    if isinstance(schema_version, bool) or not isinstance(schema_version, int):
        raise ManifestInvalidError(source, f"missing or non-integer schemaVersion: {schema_version!r}")
    if schema_version not in SUPPORTED_MANIFEST_SCHEMA_VERSIONS:
        raise UnsupportedManifestError(schema_version, SUPPORTED_MANIFEST_SCHEMA_VERSIONS)

    errors = schema_errors(doc, MANIFEST_SCHEMA)
    if errors:
        raise ManifestInvalidError(source, "; ".join(errors[:5]))

    _resolve_artifact_locations(doc, source)

    try:
        manifest = Manifest.model_validate(doc)
    except ValidationError as e:
        raise ManifestInvalidError(source, str(e)) from e

    for key in manifest.duplicate_keys():
        logger.warning("Manifest %s lists more than one artifact for key %s", source, key)

    for component, variant in manifest.default_variants.items():
        if not any(a.component == component and a.variant == variant for a in manifest.artifacts):
            logger.warning(
                "Manifest %s default variant '%s' for %s has no artifacts", source, variant, component
            )

    return manifest


def _resolve_artifact_locations(doc: dict[str, Any], source: str) -> None:
    for artifact in doc.get("artifacts", []):
        artifact["url"] = resolve_location(source, artifact["url"])
        for part in artifact.get("parts", []):
            part["url"] = resolve_location(source, part["url"])
