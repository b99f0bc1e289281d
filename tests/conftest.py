"""Shared pytest fixtures for speechctl tests.

This module contains common fixtures used across multiple test files:
an isolated Config, manifest/blob builders, and a fake HTTP server that
stands in for urllib.request.urlopen.
"""

from __future__ import annotations

import email.message
import hashlib
import io
import json
import urllib.error
from pathlib import Path

import pytest

from speechctl.config import Config
from speechctl.schemas import PlatformFacts

RELEASE_VERSION = "2024.06.1"


def tagged_sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def make_artifact(
    url: str,
    data: bytes,
    component: str = "stt",
    device: str = "cpu",
    variant: str = "",
    os_name: str = "linux",
    arch: str = "amd64",
    **extra,
) -> dict:
    """Build one manifest artifact entry whose digest matches ``data``."""
    entry = {
        "component": component,
        "os": os_name,
        "arch": arch,
        "device": device,
        "variant": variant,
        "url": url,
        "sizeBytes": len(data),
        "digest": tagged_sha256(data),
    }
    entry.update(extra)
    return entry


def write_manifest(
    path: Path,
    artifacts: list[dict],
    default_variants: dict | None = None,
    release_version: str = RELEASE_VERSION,
    schema_version: int = 1,
) -> Path:
    """Write a manifest document to ``path``."""
    doc = {
        "schemaVersion": schema_version,
        "releaseVersion": release_version,
        "artifacts": artifacts,
    }
    if default_variants is not None:
        doc["defaultVariants"] = default_variants
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


class FakeResponse(io.BytesIO):
    """Minimal stand-in for the object urlopen() returns."""

    def __init__(self, data: bytes, status: int = 200, headers: dict | None = None):
        super().__init__(data)
        self.status = status
        self.headers = headers or {}


class FakeHTTP:
    """Routes URLs to byte payloads and records every request.

    Args:
        routes: Mapping of URL to payload.
        honor_range: Answer Range requests with 206 (else ignore them with 200).
    """

    def __init__(self, routes: dict[str, bytes] | None = None, honor_range: bool = True):
        self.routes = dict(routes or {})
        self.honor_range = honor_range
        self.requests: list = []
        self.failures: dict[str, list[BaseException]] = {}
        self.truncate_once: dict[str, int] = {}

    def fail(self, url: str, *errors: BaseException) -> None:
        """Raise ``errors`` (in order) on the next requests for ``url``."""
        self.failures.setdefault(url, []).extend(errors)

    def calls_for(self, url: str) -> int:
        return sum(1 for r in self.requests if r.full_url == url)

    def urlopen(self, request, timeout=None):
        self.requests.append(request)
        url = request.full_url

        pending = self.failures.get(url)
        if pending:
            raise pending.pop(0)

        if url not in self.routes:
            raise http_error(url, 404)

        data = self.routes[url]
        range_header = request.get_header("Range")
        if range_header and self.honor_range:
            start = int(range_header.split("=", 1)[1].rstrip("-"))
            body = data[start:]
            headers = {
                "Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}",
                "Content-Length": str(len(body)),
            }
            return FakeResponse(body, status=206, headers=headers)

        if url in self.truncate_once:
            cut = self.truncate_once.pop(url)
            return TruncatedResponse(data[:cut])

        return FakeResponse(data, headers={"Content-Length": str(len(data))})


class TruncatedResponse(FakeResponse):
    """Delivers its bytes, then fails as if the connection dropped."""

    def read(self, size=-1):
        chunk = super().read(size)
        if not chunk:
            raise ConnectionResetError("connection reset by peer")
        return chunk


def http_error(url: str, code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, f"status {code}", email.message.Message(), io.BytesIO(b""))


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Make retry backoff instantaneous."""
    monkeypatch.setattr("services.manifest_fetcher.fetch.backoff_delay", lambda attempt: 0.0)
    monkeypatch.setattr("services.worker_download.run.backoff_delay", lambda attempt: 0.0)


@pytest.fixture
def fake_http(monkeypatch):
    """Install a FakeHTTP as urllib.request.urlopen.

    Yields:
        FakeHTTP: Add routes via fake_http.routes[url] = payload.
    """
    server = FakeHTTP()
    monkeypatch.setattr("urllib.request.urlopen", server.urlopen)
    yield server


@pytest.fixture
def config(tmp_path):
    """Isolated configuration rooted in a temporary directory."""
    models_dir = tmp_path / "speech"
    return Config(
        models_dir=models_dir,
        bin_dir=models_dir / "bin",
        manifest_url=str(tmp_path / "manifest.json"),
        lock_ttl_seconds=60.0,
        lock_wait_seconds=10.0,
        http_timeout_seconds=5.0,
    )


@pytest.fixture
def linux_cpu():
    return PlatformFacts(os="linux", arch="amd64", gpu=False)


@pytest.fixture
def linux_gpu():
    return PlatformFacts(os="linux", arch="amd64", gpu=True)
