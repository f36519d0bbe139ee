"""Atomic file writes.

Files are written to a temporary sibling, flushed with fsync and renamed into
place, so readers observe either the complete file or no file at all.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

TMP_SUFFIX = ".tmp"


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write content atomically using tmp file + rename pattern.

    Args:
        path: Target path for the file.
        content: Content to write.

    Raises:
        OSError: If the directory cannot be created or the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory keeps the rename on one filesystem
    fd, tmp_path_str = tempfile.mkstemp(
        suffix=TMP_SUFFIX,
        prefix=path.name + ".",
        dir=path.parent,
    )
    tmp_path = Path(tmp_path_str)

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, content.encode(encoding))
