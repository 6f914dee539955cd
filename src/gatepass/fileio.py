"""Atomic file writes shared by the bypass cache and the cookie repository."""

import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write ``data`` to ``path`` so readers never observe a partial file.

    Uses a temp file in the same directory + rename. The rename is atomic on
    POSIX filesystems, so a concurrent reader sees either the old contents or
    the new contents.

    Args:
        path: Destination file.
        data: Bytes to write.
        mode: Permission bits for the new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(data)
        Path(temp_path).replace(path)
    except BaseException:
        # Clean up temp file on failure
        Path(temp_path).unlink(missing_ok=True)
        raise
