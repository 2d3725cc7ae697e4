"""
Atomic file writing with fsync to prevent corrupt certificate files.

Pattern:
  1. Write to temporary file in the same directory
  2. Restrict permissions (private keys) while the file is still temporary
  3. Call fsync to flush to disk
  4. Rename atomically (atomic on POSIX filesystems)

A reverse proxy reloading mid-renewal sees either the old or the new file,
never a partial one, and a private key is never readable by others, not even
for the moment between write and chmod.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """
    Atomically write bytes to *path* with fsync.

    If *mode* is given the file gets those permission bits before it
    becomes visible under its final name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory ensures same filesystem for the atomic rename
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None, encoding: str = "utf-8") -> None:
    """Text variant of atomic_write_bytes."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
