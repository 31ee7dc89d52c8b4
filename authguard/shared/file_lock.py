"""
Cross-process file locking helpers.

Each guarded file has a sidecar ``<name>.lock`` file that carries the
``flock`` lock. Writers replace the guarded file through a temporary file
and ``os.replace`` while holding the exclusive lock, so a reader holding the
shared lock sees either the old record or the new one, never a partial write.
The lock file itself is never replaced, which keeps every process locking
the same inode.
"""

import fcntl
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional


def lock_path_for(path: Path) -> Path:
    """Sidecar lock file for ``path``."""
    return path.with_name(path.name + ".lock")


@contextmanager
def file_lock(path: Path, exclusive: bool = False) -> Iterator[None]:
    """Hold a shared or exclusive lock for ``path`` for the duration of the block."""
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def read_bytes_if_exists(path: Path) -> Optional[bytes]:
    """Return raw file contents, or None if the file does not exist."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def atomic_write_text(path: Path, data: str) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place.

    Callers must hold the exclusive lock for ``path``.
    """
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def locked_read(path: Path) -> Optional[bytes]:
    """Read ``path`` under the shared lock."""
    with file_lock(path, exclusive=False):
        return read_bytes_if_exists(path)


def locked_write(path: Path, data: str) -> None:
    """Atomically replace ``path`` under the exclusive lock."""
    with file_lock(path, exclusive=True):
        atomic_write_text(path, data)


def read_modify_write(path: Path, transform: Callable[[Optional[bytes]], str]) -> str:
    """Load, transform and persist ``path`` under one exclusive lock.

    ``transform`` receives the current raw contents (None when the file is
    absent) and returns the replacement contents. The lock is released on
    every exit path, including exceptions raised by ``transform``.
    """
    with file_lock(path, exclusive=True):
        new_data = transform(read_bytes_if_exists(path))
        atomic_write_text(path, new_data)
        return new_data
