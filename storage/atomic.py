"""
Atomic file writes: a reader sees either the old file or the new one.

  1. write to a temp file in the destination directory (same filesystem)
  2. optionally chmod it (keys are never visible with loose permissions)
  3. fsync, then os.replace over the destination

A crash mid-write leaves the previous file intact and at most a stray
``.<name>.*.tmp`` next to it.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """Atomically replace *path* with *content*; *mode* is applied before the rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

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
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
