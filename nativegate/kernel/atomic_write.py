"""Crash-safe file replacement for the trust store.

A reader sees either the previous file or the complete new one, never a
partial write.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def _sync_directory(directory: Path) -> None:
    if os.name == "nt":
        return
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: str | Path, payload: bytes, *, fsync: bool = True, mode: int | None = None) -> None:
    """Stage ``payload`` next to ``path`` and rename it into place."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "wb", dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(payload)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())
        if mode is not None:
            staged.chmod(mode)
        staged.replace(target)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    if fsync:
        _sync_directory(target.parent)


def atomic_write_text(path: str | Path, text: str, *, fsync: bool = True, mode: int | None = None) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), fsync=fsync, mode=mode)
