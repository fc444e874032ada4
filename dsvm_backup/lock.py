"""Exclusive per-destination run lock."""
from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

from .errors import LockError

LOGGER = logging.getLogger(__name__)


class RunLock:
    """Non-blocking ``flock`` on a lock file.

    The kernel drops the lock when the holder exits, so a killed run never
    leaves a stale lock behind.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            raise LockError(f"Lock '{self.path}' is already held by this process.")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise LockError(f"Another backup run holds '{self.path}'.") from None
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        LOGGER.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        LOGGER.debug("Released run lock %s", self.path)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["RunLock"]
