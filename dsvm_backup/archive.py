"""Local tar.gz snapshots."""
from __future__ import annotations

import errno
import gzip
import logging
import os
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List

from .config import ConfigError
from .errors import CorruptionError, StorageError
from .models import BackupMethod, BackupRecord, StrategyResult
from .utils import archive_name_for, compute_checksum, ensure_directory

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_SUFFIX = ".partial"


class ArchiveStrategy:
    """One compressed snapshot file per run in a local directory."""

    method = BackupMethod.LOCAL

    def __init__(self, destination: Path, prefix: str, logger: logging.Logger = LOGGER) -> None:
        self.destination = Path(destination).expanduser()
        self.prefix = prefix
        self.logger = logger

    def artifact_name(self, identifier: str) -> str:
        return f"{self.prefix}_{identifier}{ARCHIVE_SUFFIX}"

    # ------------------------------------------------------------------
    def prepare(self) -> None:
        try:
            ensure_directory(self.destination)
        except OSError as exc:
            raise ConfigError(f"Destination '{self.destination}' cannot be created: {exc}") from exc
        if not os.access(self.destination, os.W_OK | os.X_OK):
            raise ConfigError(f"Destination '{self.destination}' is not writable.")
        self._remove_stale_partials()

    def archive(self, identifier: str, source_paths: Iterable[Path]) -> StrategyResult:
        final_path = self.destination / self.artifact_name(identifier)
        if final_path.exists():
            raise StorageError(f"Archive '{final_path}' already exists.")

        skipped: List[str] = []
        tmp_path = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{final_path.name}.", suffix=PARTIAL_SUFFIX, dir=self.destination
            )
            os.close(fd)
            tmp_path = Path(tmp_name)
            self.logger.info("Writing archive %s", final_path)
            with tarfile.open(tmp_path, "w:gz") as tar:
                for source in source_paths:
                    for path in self._walk(Path(source), skipped):
                        self._add_entry(tar, path, skipped)
            os.replace(tmp_path, final_path)
        except OSError as exc:
            if exc.errno == errno.ENOSPC:
                raise StorageError(f"No space left on '{self.destination}'.") from exc
            raise StorageError(f"Cannot write archive '{final_path}': {exc}") from exc
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()

        return StrategyResult(
            location=str(final_path),
            size_bytes=final_path.stat().st_size,
            checksum=compute_checksum(final_path),
            skipped_paths=skipped,
        )

    def restore(self, record: BackupRecord, staging: Path) -> None:
        archive_path = self._existing_artifact(record)
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                tar.extractall(staging, filter="tar")
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise CorruptionError(f"Archive '{archive_path}' cannot be read: {exc}") from exc

    def verify(self, record: BackupRecord) -> None:
        archive_path = self._existing_artifact(record)
        if record.checksum and compute_checksum(archive_path) != record.checksum:
            raise CorruptionError(f"Checksum mismatch for '{archive_path}'.")
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                for member in tar:
                    if not member.isreg():
                        continue
                    fh = tar.extractfile(member)
                    if fh is None:
                        continue
                    while fh.read(65536):
                        pass
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise CorruptionError(f"Archive '{archive_path}' cannot be read: {exc}") from exc

    def owns(self, record: BackupRecord) -> bool:
        location = Path(record.location)
        return location.parent == self.destination and location.name.startswith(f"{self.prefix}_")

    def delete(self, record: BackupRecord) -> None:
        path = Path(record.location)
        if path.exists():
            path.unlink()
            self.logger.info("Deleted archive %s", path)
        else:
            self.logger.warning("Archive %s already missing", path)

    # ------------------------------------------------------------------
    def _remove_stale_partials(self) -> None:
        # Leftovers of a killed run. Only called with the run lock held.
        for stale in self.destination.glob(f".{self.prefix}_*{PARTIAL_SUFFIX}"):
            try:
                stale.unlink()
            except FileNotFoundError:
                continue
            self.logger.warning("Removed leftover temporary archive %s", stale)

    def _existing_artifact(self, record: BackupRecord) -> Path:
        path = Path(record.location)
        if not path.is_file():
            raise CorruptionError(f"Archive '{path}' for backup '{record.identifier}' is missing.")
        return path

    def _walk(self, source: Path, skipped: List[str]) -> Iterator[Path]:
        if self._inside_destination(source):
            return
        yield source
        if not source.is_dir() or source.is_symlink():
            return

        def on_error(exc: OSError) -> None:
            self.logger.warning("Cannot read %s: %s", exc.filename, exc.strerror)
            skipped.append(str(exc.filename))

        for root, dirs, files in os.walk(source, onerror=on_error):
            root_path = Path(root)
            dirs[:] = sorted(d for d in dirs if not self._inside_destination(root_path / d))
            for name in sorted(dirs) + sorted(files):
                yield root_path / name

    def _inside_destination(self, path: Path) -> bool:
        destination = os.path.abspath(self.destination)
        candidate = os.path.abspath(path)
        return candidate == destination or candidate.startswith(destination + os.sep)

    def _add_entry(self, tar: tarfile.TarFile, path: Path, skipped: List[str]) -> None:
        try:
            info = tar.gettarinfo(str(path), arcname=archive_name_for(path))
        except (FileNotFoundError, PermissionError) as exc:
            self.logger.warning("Skipping %s: %s", path, exc.strerror)
            skipped.append(str(path))
            return
        if info is None:
            self.logger.debug("Skipping unsupported file type %s", path)
            return
        if not info.isreg():
            tar.addfile(info)
            return
        try:
            fh = self._open_source(path)
        except (FileNotFoundError, PermissionError) as exc:
            self.logger.warning("Skipping %s: %s", path, exc.strerror)
            skipped.append(str(path))
            return
        with fh:
            tar.addfile(info, fh)

    def _open_source(self, path: Path) -> BinaryIO:
        return open(path, "rb")


__all__ = ["ARCHIVE_SUFFIX", "ArchiveStrategy"]
