"""Exception hierarchy shared by the backup strategies and the CLI."""
from __future__ import annotations

from typing import Optional


class BackupError(Exception):
    """Base class for every failure raised by the backup tool."""


class StorageError(BackupError, OSError):
    """Local storage problem: disk full, destination not writable."""


class AuthError(BackupError):
    """Credentials were rejected or could not be resolved."""


class RepositoryError(BackupError):
    """The repository tool reported an internal failure."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CorruptionError(BackupError):
    """Backup data failed an integrity check."""


class NotFoundError(BackupError):
    """No backup with the requested identifier exists."""


class TransferError(BackupError):
    """A remote transfer failed; carries the transport exit code or HTTP status."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class LockError(BackupError):
    """Another run already holds the lock for this destination."""


class ExecutionError(BackupError):
    """An external command could not be started or timed out."""


__all__ = [
    "AuthError",
    "BackupError",
    "CorruptionError",
    "ExecutionError",
    "LockError",
    "NotFoundError",
    "RepositoryError",
    "StorageError",
    "TransferError",
]
