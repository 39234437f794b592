"""
Exclusive lock keyed by staging directory.

Uses an advisory flock on a lock file next to the staging directory. The
lock is released automatically if the process dies, so a crashed run never
blocks the next one.
"""

import fcntl
import logging
import os
from pathlib import Path

from ..errors import ConcurrentRunError

logger = logging.getLogger(__name__)


class StagingLock:
    """
    Non-blocking exclusive lock, usable as a context manager.

    Raises ConcurrentRunError on acquire if another process (or another
    StagingLock in this process) holds the same lock file.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self):
        if self._fd is not None:
            raise ConcurrentRunError(f"Lock already held by this runner: {self.lock_path}")

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ConcurrentRunError(
                f"Another backup run holds the staging lock: {self.lock_path}"
            )
        except OSError:
            os.close(fd)
            raise

        # Record the owner for whoever inspects a stuck lock file
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired staging lock {self.lock_path}")

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released staging lock {self.lock_path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
