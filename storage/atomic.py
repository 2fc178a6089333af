"""
Atomic file writes for key material and challenge files.

Pattern:
  1. Write to a temporary file in the destination directory
  2. fsync
  3. os.replace() onto the final name (atomic on POSIX filesystems)

A crash mid-write leaves the previous file intact, and a half-written
challenge token is never visible to the CA's validation request.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """
    Atomically replace *path* with *content*.

    When *mode* is given the temp file is chmod-ed before the rename, so the
    final file never exists with looser permissions.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target: rename must not cross filesystems
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8", mode: Optional[int] = None) -> None:
    """Text variant of atomic_write_bytes()."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
