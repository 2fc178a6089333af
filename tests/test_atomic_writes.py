"""
Tests for atomic file writing with fsync to prevent corruption.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from storage.atomic import atomic_write_bytes, atomic_write_text


class TestAtomicWriteBytes:
    def test_creates_file_and_parents(self, tmp_path):
        path = tmp_path / "subdir" / "nested" / "blob.bin"
        atomic_write_bytes(path, b"hello world")
        assert path.read_bytes() == b"hello world"

    def test_overwrites_existing(self, tmp_path):
        path = tmp_path / "blob.bin"
        path.write_bytes(b"old content")
        atomic_write_bytes(path, b"new content")
        assert path.read_bytes() == b"new content"

    def test_no_temp_file_left(self, tmp_path):
        atomic_write_bytes(tmp_path / "blob.bin", b"content")
        assert [p.name for p in tmp_path.iterdir()] == ["blob.bin"]

    def test_mode_applied_before_rename(self, tmp_path):
        path = tmp_path / "privkey.pem"
        seen_modes = []
        real_replace = os.replace

        def spy_replace(src, dst):
            seen_modes.append(stat.S_IMODE(os.stat(src).st_mode))
            real_replace(src, dst)

        with patch("storage.atomic.os.replace", side_effect=spy_replace):
            atomic_write_bytes(path, b"secret", mode=0o600)

        assert seen_modes == [0o600]
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_failed_write_keeps_old_file_and_cleans_temp(self, tmp_path):
        path = tmp_path / "cert.pem"
        path.write_text("previous")

        with patch("storage.atomic.os.replace", side_effect=OSError("rename failed")):
            with pytest.raises(OSError, match="rename failed"):
                atomic_write_bytes(path, b"new")

        assert path.read_text() == "previous"
        assert list(tmp_path.glob(".*.tmp")) == []

    def test_accepts_string_path(self, tmp_path):
        atomic_write_bytes(str(tmp_path / "s.bin"), b"x")  # type: ignore[arg-type]
        assert (tmp_path / "s.bin").read_bytes() == b"x"


class TestAtomicWriteText:
    def test_encodes_utf8(self, tmp_path):
        path = tmp_path / "metadata.json"
        atomic_write_text(path, '{"cn": "bücher.example"}')
        assert path.read_bytes() == '{"cn": "bücher.example"}'.encode("utf-8")

    def test_pem_write(self, tmp_path):
        pem = "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"
        atomic_write_text(tmp_path / "cert.pem", pem)
        assert (tmp_path / "cert.pem").read_text() == pem
        assert list(tmp_path.glob(".*")) == []

    def test_concurrent_writes_to_different_files(self, tmp_path):
        import concurrent.futures

        def write_file(i):
            path = tmp_path / f"concurrent{i}.txt"
            atomic_write_text(path, f"content {i}")
            return path

        with concurrent.futures.ThreadPoolExecutor(max_workers=4) as executor:
            paths = list(executor.map(write_file, range(10)))

        for i, path in enumerate(paths):
            assert Path(path).read_text() == f"content {i}"
        assert list(tmp_path.glob(".*.tmp")) == []
