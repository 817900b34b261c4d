"""Atomic file writes and lock files."""

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from types import TracebackType

from .constants import LOCK_SUFFIX

logger = logging.getLogger(__name__)


class FileLockedError(OSError):
    """Exception raised when a lock file is already held by another writer."""


def atomic_write(path: Path, data: bytes, *, fsync: bool = True) -> None:
    """Write data to a temporary file next to path and rename it into place.

    Readers observe either the previous content or the complete new content, never a
    partially written file.

    :param path: The destination file.
    :param data: The bytes to write.
    :param fsync: Whether to flush the data to stable storage before renaming."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix='.tmp-')
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class LockFile:
    """An exclusive `<path>.lock` file that is renamed over `path` on commit.

    Creating the lock uses O_CREAT | O_EXCL, so at most one writer holds it. Writers that
    find it held fail immediately with FileLockedError instead of waiting."""

    def __init__(self, path: Path, *, fsync: bool = True) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + LOCK_SUFFIX)
        self.fsync = fsync
        self._fd: int | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            logger.warning('Lock %s is held by another writer', self.lock_path)
            msg = f'{self.path} is locked'
            raise FileLockedError(msg) from e

    def write(self, data: bytes) -> None:
        if self._fd is None:
            msg = 'Lock is not held'
            raise RuntimeError(msg)
        os.write(self._fd, data)

    def commit(self) -> None:
        """Make the written content visible under the real path and release the lock."""
        if self._fd is None:
            msg = 'Lock is not held'
            raise RuntimeError(msg)
        if self.fsync:
            os.fsync(self._fd)
        try:
            os.replace(self.lock_path, self.path)
        except BaseException:
            self.release()
            raise
        os.close(self._fd)
        self._fd = None

    def commit_delete(self) -> None:
        """Remove the real path and release the lock."""
        self.path.unlink()
        self.release()

    def release(self) -> None:
        # Once committed the lock path may already belong to the next writer
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()

    def __enter__(self) -> 'LockFile':
        self.acquire()
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None,
                 tb: TracebackType | None) -> None:
        # Anything not committed by now is abandoned
        self.release()
