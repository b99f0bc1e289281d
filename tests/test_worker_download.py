"""Tests for services.worker_download.run (Download & Verify worker)."""

from __future__ import annotations

import hashlib
import io
import os
import tarfile
import zipfile

import pytest
from conftest import http_error, make_artifact, tagged_sha256

from services.artifact_selector.policy import select_artifact
from services.worker_download.run import (
    fetch_artifact,
    publish_install,
    stage_install,
    unpack_archive,
)
from speechctl.errors import (
    CancelledError,
    IntegrityCheckFailedError,
    NetworkError,
    OfflineRequiredError,
    UnsafeArchiveEntryError,
)
from speechctl.schemas import ArtifactPart, Manifest
from speechctl.utils.cancel import CancelToken

URL = "https://cdn.example.test/stt/ggml-base.bin"
PAYLOAD = bytes(range(256)) * 1024


def _part(url: str = URL, data: bytes = PAYLOAD, **extra) -> ArtifactPart:
    return ArtifactPart(url=url, size_bytes=len(data), digest=tagged_sha256(data), **extra)


def _tar_bytes(entries: dict[str, bytes], links: dict[str, str] | None = None) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name.endswith(".sh") else 0o644
            tar.addfile(info, io.BytesIO(data))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return buffer.getvalue()


def _zip_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


class TestFetchArtifact:
    """Tests for single-part download and verification."""

    def test_downloads_and_verifies(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD

        path = fetch_artifact(_part(), tmp_path)

        assert path == tmp_path / "ggml-base.bin"
        assert path.read_bytes() == PAYLOAD
        assert not (tmp_path / "ggml-base.bin.part").exists()

    def test_digest_mismatch_removes_partial(self, tmp_path, fake_http):
        """A corrupted transfer must never be left behind as if verified."""
        fake_http.routes[URL] = b"X" + PAYLOAD[1:]

        with pytest.raises(IntegrityCheckFailedError) as exc_info:
            fetch_artifact(_part(), tmp_path)

        assert exc_info.value.expected == tagged_sha256(PAYLOAD)
        assert list(tmp_path.iterdir()) == []

    def test_short_body_is_integrity_failure(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD[:100]

        with pytest.raises(IntegrityCheckFailedError, match="bytes"):
            fetch_artifact(_part(), tmp_path)

    def test_oversized_body_stops_early(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD + b"extra"

        with pytest.raises(IntegrityCheckFailedError):
            fetch_artifact(_part(), tmp_path)

        assert not (tmp_path / "ggml-base.bin.part").exists()

    def test_sha512_digest(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD
        part = ArtifactPart(url=URL, size_bytes=len(PAYLOAD), digest="sha512:" + hashlib.sha512(PAYLOAD).hexdigest())

        assert fetch_artifact(part, tmp_path).read_bytes() == PAYLOAD

    def test_explicit_file_name(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD

        path = fetch_artifact(_part(file_name="model.bin"), tmp_path)

        assert path.name == "model.bin"

    def test_offline_refuses_network(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD

        with pytest.raises(OfflineRequiredError):
            fetch_artifact(_part(), tmp_path, offline=True)

        assert fake_http.requests == []

    def test_copies_local_file(self, tmp_path):
        source = tmp_path / "mirror" / "model.bin"
        source.parent.mkdir()
        source.write_bytes(PAYLOAD)
        staging = tmp_path / "staging"

        path = fetch_artifact(_part(url=str(source)), staging, offline=True)

        assert path.read_bytes() == PAYLOAD

    def test_missing_local_file(self, tmp_path):
        with pytest.raises(NetworkError, match="not found"):
            fetch_artifact(_part(url=str(tmp_path / "nope.bin")), tmp_path / "staging")


class TestResume:
    """Tests for resumable transfers."""

    def test_resumes_leftover_part_with_range(self, tmp_path, fake_http):
        """A .part left by a crash is continued from its current size."""
        fake_http.routes[URL] = PAYLOAD
        (tmp_path / "ggml-base.bin.part").write_bytes(PAYLOAD[:1000])

        path = fetch_artifact(_part(), tmp_path)

        assert path.read_bytes() == PAYLOAD
        assert fake_http.requests[0].get_header("Range") == "bytes=1000-"

    def test_server_ignoring_range_restarts(self, tmp_path, fake_http):
        """A 200 reply to a Range request restarts from zero."""
        fake_http.honor_range = False
        fake_http.routes[URL] = PAYLOAD
        (tmp_path / "ggml-base.bin.part").write_bytes(PAYLOAD[:1000])

        path = fetch_artifact(_part(), tmp_path)

        assert path.read_bytes() == PAYLOAD

    def test_stale_part_with_wrong_bytes_fails_integrity(self, tmp_path, fake_http):
        """Resumed bytes are re-hashed, so a bad prefix is caught."""
        fake_http.routes[URL] = PAYLOAD
        (tmp_path / "ggml-base.bin.part").write_bytes(b"\xff" * 1000)

        with pytest.raises(IntegrityCheckFailedError):
            fetch_artifact(_part(), tmp_path)

        assert not (tmp_path / "ggml-base.bin.part").exists()

    def test_dropped_connection_resumes_on_retry(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD
        fake_http.truncate_once[URL] = 70_000

        path = fetch_artifact(_part(), tmp_path)

        assert path.read_bytes() == PAYLOAD
        assert fake_http.calls_for(URL) == 2
        assert fake_http.requests[1].get_header("Range") == "bytes=70000-"

    def test_transient_errors_retried(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD
        fake_http.fail(URL, http_error(URL, 503), ConnectionRefusedError("refused"))

        assert fetch_artifact(_part(), tmp_path).read_bytes() == PAYLOAD
        assert fake_http.calls_for(URL) == 3

    def test_gives_up_after_attempts(self, tmp_path, fake_http):
        fake_http.fail(URL, *(http_error(URL, 500) for _ in range(3)))

        with pytest.raises(NetworkError, match="after 3 attempts"):
            fetch_artifact(_part(), tmp_path)

    def test_forbidden_not_retried(self, tmp_path, fake_http):
        fake_http.fail(URL, http_error(URL, 403))

        with pytest.raises(NetworkError, match="403"):
            fetch_artifact(_part(), tmp_path)

        assert fake_http.calls_for(URL) == 1


class TestCancellation:
    """Tests for cancellation during transfer."""

    def test_cancelled_before_start(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD
        token = CancelToken()
        token.cancel("user abort")

        with pytest.raises(CancelledError):
            fetch_artifact(_part(), tmp_path, cancel=token)

        assert fake_http.requests == []

    def test_expired_deadline_cancels(self, tmp_path, fake_http):
        fake_http.routes[URL] = PAYLOAD
        token = CancelToken(timeout_seconds=1e-9)

        with pytest.raises(CancelledError, match="timeout"):
            fetch_artifact(_part(), tmp_path, cancel=token)


class TestUnpackArchive:
    """Tests for safe archive extraction."""

    def test_unpacks_tar_gz(self, tmp_path):
        archive = tmp_path / "voice.tar.gz"
        archive.write_bytes(_tar_bytes({"voice/amy.onnx": b"onnx", "voice/run.sh": b"#!/bin/sh\n"}))
        dest = tmp_path / "out"

        count = unpack_archive(archive, dest)

        assert count == 2
        assert (dest / "voice" / "amy.onnx").read_bytes() == b"onnx"
        assert os.access(dest / "voice" / "run.sh", os.X_OK)

    def test_unpacks_zip(self, tmp_path):
        archive = tmp_path / "model.zip"
        archive.write_bytes(_zip_bytes({"model/encoder.onnx": b"enc", "model/decoder.onnx": b"dec"}))
        dest = tmp_path / "out"

        unpack_archive(archive, dest)

        assert (dest / "model" / "decoder.onnx").read_bytes() == b"dec"

    @pytest.mark.parametrize(
        "entry",
        ["../escape.txt", "/etc/passwd", "a/../../escape.txt", "C:/Windows/evil.dll", "..\\escape.txt"],
    )
    def test_rejects_unsafe_tar_paths(self, tmp_path, entry):
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(_tar_bytes({entry: b"pwned"}))

        with pytest.raises(UnsafeArchiveEntryError):
            unpack_archive(archive, tmp_path / "out")

        assert not (tmp_path / "escape.txt").exists()

    def test_rejects_unsafe_zip_paths(self, tmp_path):
        archive = tmp_path / "bad.zip"
        archive.write_bytes(_zip_bytes({"../escape.txt": b"pwned"}))

        with pytest.raises(UnsafeArchiveEntryError):
            unpack_archive(archive, tmp_path / "out")

        assert not (tmp_path / "escape.txt").exists()

    def test_rejects_escaping_symlink(self, tmp_path):
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(_tar_bytes({}, links={"lib/link": "../../outside"}))

        with pytest.raises(UnsafeArchiveEntryError, match="link"):
            unpack_archive(archive, tmp_path / "out")

    def test_allows_internal_symlink(self, tmp_path):
        archive = tmp_path / "ok.tar.gz"
        archive.write_bytes(_tar_bytes({"lib/libwhisper.so.1": b"so"}, links={"lib/libwhisper.so": "libwhisper.so.1"}))
        dest = tmp_path / "out"

        unpack_archive(archive, dest)

        assert (dest / "lib" / "libwhisper.so").read_bytes() == b"so"

    def test_rejects_non_archive(self, tmp_path):
        archive = tmp_path / "plain.bin"
        archive.write_bytes(b"not an archive at all")

        with pytest.raises(UnsafeArchiveEntryError, match="not a tar or zip"):
            unpack_archive(archive, tmp_path / "out")

    def test_cancel_between_entries(self, tmp_path):
        archive = tmp_path / "voice.tar.gz"
        archive.write_bytes(_tar_bytes({"a.bin": b"a", "b.bin": b"b"}))
        token = CancelToken()
        token.cancel("user abort")

        with pytest.raises(CancelledError):
            unpack_archive(archive, tmp_path / "out", cancel=token)


class TestStageInstall:
    """Tests for multi-part staging and publish."""

    def _selection(self, artifact: dict, linux_cpu):
        manifest = Manifest.model_validate({"schemaVersion": 1, "releaseVersion": "1.0", "artifacts": [artifact]})
        return select_artifact(manifest, linux_cpu, "auto", "", artifact["component"])

    def test_assembles_model_and_runtime(self, tmp_path, fake_http, linux_cpu):
        runtime = _tar_bytes({"whisper-cli.sh": b"#!/bin/sh\n"})
        fake_http.routes[URL] = PAYLOAD
        fake_http.routes["https://cdn.example.test/runtime.tar.gz"] = runtime
        artifact = make_artifact(
            URL,
            PAYLOAD,
            parts=[
                {
                    "role": "runtime",
                    "url": "https://cdn.example.test/runtime.tar.gz",
                    "sizeBytes": len(runtime),
                    "digest": tagged_sha256(runtime),
                    "unpackKind": "archive",
                }
            ],
        )

        tree = stage_install(self._selection(artifact, linux_cpu), tmp_path / "staging")

        assert (tree / "ggml-base.bin").read_bytes() == PAYLOAD
        assert (tree / "bin" / "whisper-cli.sh").exists()
        assert not (tree / "runtime.tar.gz").exists()

    def test_failing_part_fails_install(self, tmp_path, fake_http, linux_cpu):
        fake_http.routes[URL] = PAYLOAD
        artifact = make_artifact(
            URL,
            PAYLOAD,
            parts=[{"role": "runtime", "url": "https://cdn.example.test/missing", "sizeBytes": 1, "digest": tagged_sha256(b"x")}],
        )

        with pytest.raises(NetworkError):
            stage_install(self._selection(artifact, linux_cpu), tmp_path / "staging")

    def test_offline_checked_before_any_transfer(self, tmp_path, fake_http, linux_cpu):
        source = tmp_path / "model.bin"
        source.write_bytes(PAYLOAD)
        artifact = make_artifact(
            str(source),
            PAYLOAD,
            parts=[{"role": "runtime", "url": "https://cdn.example.test/rt", "sizeBytes": 1, "digest": tagged_sha256(b"x")}],
        )

        with pytest.raises(OfflineRequiredError):
            stage_install(self._selection(artifact, linux_cpu), tmp_path / "staging", offline=True)

        assert not (tmp_path / "staging" / "downloads" / "model.bin").exists()

    def test_keeps_resumable_parts_only(self, tmp_path, fake_http, linux_cpu):
        """Leftover trees are cleared, leftover .part files are resumed."""
        fake_http.routes[URL] = PAYLOAD
        staging = tmp_path / "staging"
        (staging / "install").mkdir(parents=True)
        (staging / "install" / "stale.bin").write_bytes(b"stale")
        (staging / "downloads").mkdir()
        (staging / "downloads" / "ggml-base.bin.part").write_bytes(PAYLOAD[:500])

        tree = stage_install(self._selection(make_artifact(URL, PAYLOAD), linux_cpu), staging)

        assert not (tree / "stale.bin").exists()
        assert fake_http.requests[0].get_header("Range") == "bytes=500-"

    def test_publish_moves_tree(self, tmp_path, fake_http, linux_cpu):
        fake_http.routes[URL] = PAYLOAD
        artifact = make_artifact(URL, PAYLOAD)
        tree = stage_install(self._selection(artifact, linux_cpu), tmp_path / "staging")

        final = publish_install(tree, tmp_path / "speech" / "stt" / "default", "1.0", artifact["digest"])

        assert final.parent == tmp_path / "speech" / "stt" / "default"
        assert final.name.startswith("1.0-" + artifact["digest"].split(":")[1][:12])
        assert (final / "ggml-base.bin").read_bytes() == PAYLOAD
        assert not tree.exists()
