"""Tests for speechctl.utils.atomic_io module."""

import os
import tempfile
from pathlib import Path

import pytest

from speechctl.utils.atomic_io import (
    atomic_write_bytes,
    atomic_write_text,
    cleanup_orphan_temp_files,
    publish_directory,
    remove_tree,
    replace_symlink,
)


class TestAtomicWrite:
    """Tests for atomic_write_bytes / atomic_write_text."""

    def test_creates_file_and_parents(self):
        """Should create parent directories and the file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "deep" / "receipt.json"

            atomic_write_bytes(path, b"{}")

            assert path.read_bytes() == b"{}"

    def test_replaces_existing_file(self):
        """Should atomically replace existing content."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            path.write_bytes(b"old")

            atomic_write_bytes(path, b"new")

            assert path.read_bytes() == b"new"

    def test_no_temp_file_left_behind(self):
        """Temp file should not exist after a successful write."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"

            atomic_write_text(path, "data")

            assert not path.with_suffix(".json.tmp").exists()

    def test_overwrites_stale_temp(self):
        """A temp file left by an interrupted write should not block a new write."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            temp_path = path.with_suffix(".json.tmp")
            temp_path.write_bytes(b"orphaned temp data")

            atomic_write_text(path, "fresh")

            assert path.read_text() == "fresh"
            assert not temp_path.exists()

    def test_text_utf8(self):
        """Text should be written as UTF-8 by default."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "voice.txt"
            text = "voix: éè 中文"

            atomic_write_text(path, text)

            assert path.read_text(encoding="utf-8") == text


class TestPublishDirectory:
    """Tests for publish_directory function."""

    def test_moves_staged_tree(self, tmp_path):
        """Staged content should appear at the final path and leave staging."""
        staged = tmp_path / "staging" / "install"
        staged.mkdir(parents=True)
        (staged / "model.bin").write_bytes(b"weights")
        final = tmp_path / "speech" / "stt" / "default" / "v1-abc"

        result = publish_directory(staged, final)

        assert result == final
        assert (final / "model.bin").read_bytes() == b"weights"
        assert not staged.exists()

    def test_refuses_existing_target(self, tmp_path):
        """Publishing must never clobber an existing directory."""
        staged = tmp_path / "staged"
        staged.mkdir()
        final = tmp_path / "final"
        final.mkdir()
        (final / "live.bin").write_bytes(b"live")

        with pytest.raises(FileExistsError):
            publish_directory(staged, final)

        assert (final / "live.bin").read_bytes() == b"live"
        assert staged.exists()


@pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
class TestReplaceSymlink:
    """Tests for replace_symlink function."""

    def test_creates_link(self, tmp_path):
        target = tmp_path / "v1" / "bin"
        target.mkdir(parents=True)
        link = tmp_path / "links" / "stt-default"

        replace_symlink(target, link)

        assert link.is_symlink()
        assert link.resolve() == target.resolve()

    def test_repoints_existing_link(self, tmp_path):
        """An existing link should be swapped to the new target."""
        old = tmp_path / "v1"
        new = tmp_path / "v2"
        old.mkdir()
        new.mkdir()
        link = tmp_path / "stt-default"
        replace_symlink(old, link)

        replace_symlink(new, link)

        assert link.resolve() == new.resolve()
        assert not list(tmp_path.glob(".*.tmp"))


class TestRemoveTree:
    """Tests for remove_tree function."""

    def test_removes_directory(self, tmp_path):
        tree = tmp_path / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "f.bin").write_bytes(b"x")

        assert remove_tree(tree) is True
        assert not tree.exists()

    def test_removes_file(self, tmp_path):
        path = tmp_path / "f.bin"
        path.write_bytes(b"x")

        assert remove_tree(path) is True
        assert not path.exists()

    def test_missing_path_is_noop(self, tmp_path):
        assert remove_tree(tmp_path / "missing") is False


class TestOrphanTempCleanup:
    """Tests for cleanup_orphan_temp_files function."""

    def test_removes_only_tmp_files(self, tmp_path):
        """Should remove *.tmp files and keep everything else."""
        (tmp_path / "receipt.json.tmp").write_bytes(b"orphan1")
        (tmp_path / ".stt-default.1a2b3c4d.tmp").write_bytes(b"orphan2")
        (tmp_path / "model.bin").write_bytes(b"real file")

        removed = cleanup_orphan_temp_files(tmp_path)

        assert removed == 2
        assert (tmp_path / "model.bin").exists()
        assert not list(tmp_path.glob("*.tmp"))

    def test_missing_directory_returns_zero(self, tmp_path):
        assert cleanup_orphan_temp_files(tmp_path / "missing") == 0

    def test_custom_suffix(self, tmp_path):
        (tmp_path / "model.bin.part").write_bytes(b"partial")
        (tmp_path / "model.bin.tmp").write_bytes(b"temp")

        removed = cleanup_orphan_temp_files(tmp_path, temp_suffix=".part")

        assert removed == 1
        assert (tmp_path / "model.bin.tmp").exists()
