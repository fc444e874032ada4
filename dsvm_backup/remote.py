"""Snapshots staged locally and pushed to object storage."""
from __future__ import annotations

import dataclasses
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Protocol

from .archive import ArchiveStrategy
from .config import ConfigError
from .errors import BackupError, CorruptionError, TransferError
from .models import BackupMethod, BackupRecord, StrategyResult
from .utils import compute_checksum

LOGGER = logging.getLogger(__name__)


class Transport(Protocol):
    def ensure_remote(self) -> None:
        ...

    def upload(self, file_path: Path) -> None:
        ...

    def download(self, name: str, file_path: Path) -> None:
        ...

    def delete(self, name: str) -> None:
        ...

    def remote_size(self, name: str) -> Optional[int]:
        ...


class RemoteSyncStrategy:
    """Archive into ``staging_directory`` then copy the file to the remote.

    A transfer that does not complete fails the whole run: the staged copy is
    removed and the error carries the transport's own exit code. Retrying is
    left to the transport.
    """

    method = BackupMethod.REMOTE

    def __init__(self, snapshots: ArchiveStrategy, transport: Transport, logger: logging.Logger = LOGGER) -> None:
        self.snapshots = snapshots
        self.transport = transport
        self.logger = logger

    def prepare(self) -> None:
        self.snapshots.prepare()
        try:
            self.transport.ensure_remote()
        except TransferError as exc:
            raise ConfigError(f"Remote destination is unreachable: {exc}") from exc

    def archive(self, identifier: str, source_paths: Iterable[Path]) -> StrategyResult:
        staged = self.snapshots.archive(identifier, source_paths)
        staged_path = Path(staged.location)
        try:
            self.transport.upload(staged_path)
        except BackupError:
            self.logger.error("Transfer of %s failed, removing staged copy", staged_path.name)
            staged_path.unlink()
            raise
        return StrategyResult(
            location=staged_path.name,
            size_bytes=staged.size_bytes,
            checksum=staged.checksum,
            skipped_paths=staged.skipped_paths,
        )

    def restore(self, record: BackupRecord, staging: Path) -> None:
        local = self._staged_copy(record)
        if local is not None:
            self.snapshots.restore(dataclasses.replace(record, location=str(local)), staging)
            return
        fd, tmp_name = tempfile.mkstemp(prefix=f".{record.location}.", dir=staging.parent)
        os.close(fd)
        downloaded = Path(tmp_name)
        try:
            self.transport.download(record.location, downloaded)
            if record.checksum and compute_checksum(downloaded) != record.checksum:
                raise CorruptionError(f"Downloaded '{record.location}' does not match its checksum.")
            self.snapshots.restore(dataclasses.replace(record, location=str(downloaded)), staging)
        finally:
            if downloaded.exists():
                downloaded.unlink()

    def verify(self, record: BackupRecord) -> None:
        size = self.transport.remote_size(record.location)
        if size is None:
            raise CorruptionError(f"Remote object '{record.location}' is missing.")
        if size != record.size_bytes:
            raise CorruptionError(
                f"Remote object '{record.location}' has {size} bytes, expected {record.size_bytes}."
            )
        local = self._staged_copy(record)
        if local is not None:
            self.snapshots.verify(dataclasses.replace(record, location=str(local)))

    def owns(self, record: BackupRecord) -> bool:
        return "/" not in record.location and record.location.startswith(f"{self.snapshots.prefix}_")

    def delete(self, record: BackupRecord) -> None:
        self.transport.delete(record.location)
        local = self.snapshots.destination / record.location
        if local.exists():
            local.unlink()
        self.logger.info("Deleted remote snapshot %s", record.location)

    # ------------------------------------------------------------------
    def _staged_copy(self, record: BackupRecord) -> Optional[Path]:
        local = self.snapshots.destination / record.location
        if local.is_file() and (not record.checksum or compute_checksum(local) == record.checksum):
            return local
        return None


__all__ = ["RemoteSyncStrategy", "Transport"]
