"""Strategy selection, backup runs and retention."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .archive import ArchiveStrategy
from .cloud import RcloneTransport, WebDAVTransport
from .config import BackupConfig, ConfigError
from .errors import AuthError, BackupError, NotFoundError
from .executor import CommandExecutor, SubprocessExecutor
from .lock import RunLock
from .models import BackupMethod, BackupRecord, RecordStatus, RestoreOutcome, RestoreRequest, StrategyResult
from .remote import RemoteSyncStrategy
from .repository import RepositoryStrategy
from .restore import restore as restore_backup
from .secrets import SecretError, SecretManager
from .store import JsonRecordStore, RecordStore
from .utils import format_size, timestamp_for_filename

LOGGER = logging.getLogger(__name__)


class Strategy(Protocol):
    """Operations every backup method offers to the dispatcher."""

    method: BackupMethod

    def prepare(self) -> None:
        ...

    def archive(self, identifier: str, source_paths: Iterable[Path]) -> StrategyResult:
        ...

    def restore(self, record: BackupRecord, staging: Path) -> None:
        ...

    def verify(self, record: BackupRecord) -> None:
        ...

    def owns(self, record: BackupRecord) -> bool:
        """Whether *record* points at an artifact under this strategy's destination."""
        ...

    def delete(self, record: BackupRecord) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupDispatcher:
    config: BackupConfig
    store: RecordStore
    strategy: Strategy
    lock: RunLock
    logger: logging.Logger = LOGGER
    clock: Callable[[], datetime] = field(default=_utcnow)

    def run(self) -> BackupRecord:
        """Run one backup with the configured method.

        Returns the record written for the run. Any failure is re-raised after
        a ``status=failed`` log line; no record is written in that case.
        """

        missing = [str(path) for path in self.config.source_paths if not path.exists()]
        if missing:
            raise ConfigError(f"Source paths do not exist: {', '.join(missing)}")

        with self.lock:
            created_at = self.clock()
            identifier = self._new_identifier(created_at)
            self.logger.info(
                "backup started id=%s method=%s destination=%s",
                identifier,
                self.config.method.value,
                self.config.destination,
            )
            try:
                self.strategy.prepare()
                result = self.strategy.archive(identifier, self.config.source_paths)
            except Exception as exc:
                self.logger.error(
                    "backup finished id=%s method=%s status=%s error=%s",
                    identifier,
                    self.config.method.value,
                    RecordStatus.FAILED.value,
                    exc,
                )
                raise

            status = RecordStatus.PARTIAL if result.skipped_paths else RecordStatus.SUCCESS
            record = BackupRecord(
                identifier=identifier,
                method=self.config.method,
                size_bytes=result.size_bytes,
                created_at=created_at,
                status=status,
                location=result.location,
                checksum=result.checksum,
                skipped_paths=tuple(result.skipped_paths),
            )
            self.store.append(record)
            self.logger.info(
                "backup finished id=%s method=%s status=%s size=%s skipped=%d",
                identifier,
                self.config.method.value,
                status.value,
                format_size(record.size_bytes),
                len(record.skipped_paths),
            )
            for path in record.skipped_paths:
                self.logger.warning("backup skipped id=%s path=%s", identifier, path)

            self._apply_retention()
            return record

    def apply_retention(self) -> List[BackupRecord]:
        with self.lock:
            return self._apply_retention()

    def records(self) -> List[BackupRecord]:
        """All records, newest first."""

        return _newest_first(self.store.records())

    def restore(self, request: RestoreRequest) -> RestoreOutcome:
        with self.lock:
            return restore_backup(request, self.store, self.strategy, self.logger)

    def verify(self, identifier: str) -> BackupRecord:
        record = self.store.get(identifier)
        if record is None:
            raise NotFoundError(f"Backup '{identifier}' not found.")
        self.strategy.verify(record)
        self.logger.info("verify finished id=%s status=ok", identifier)
        return record

    # ------------------------------------------------------------------
    def _apply_retention(self) -> List[BackupRecord]:
        ordered = _newest_first(
            record
            for record in self.store.records()
            if record.method is self.config.method and self.strategy.owns(record)
        )
        removed: List[BackupRecord] = []
        for record in ordered[self.config.retention_count:]:
            try:
                self.strategy.delete(record)
            except (BackupError, OSError) as exc:
                self.logger.warning("retention failed id=%s error=%s", record.identifier, exc)
                continue
            self.store.remove(record.identifier)
            removed.append(record)
            self.logger.info(
                "retention removed id=%s created_at=%s keep=%d",
                record.identifier,
                record.created_at.isoformat(),
                self.config.retention_count,
            )
        return removed

    def _new_identifier(self, created_at: datetime) -> str:
        base = timestamp_for_filename(created_at)
        taken = {record.identifier for record in self.store.records()}
        identifier = base
        counter = 1
        while identifier in taken:
            counter += 1
            identifier = f"{base}-{counter}"
        return identifier


def _newest_first(records: Iterable[BackupRecord]) -> List[BackupRecord]:
    indexed = sorted(enumerate(records), key=lambda item: (item[1].created_at, item[0]), reverse=True)
    return [record for _, record in indexed]


# ---------------------------------------------------------------------------
def resolve_credentials(config: BackupConfig, secret_manager: Optional[SecretManager]) -> Dict[str, str]:
    """Map configured environment variables to their secret values."""

    if not config.credentials:
        return {}
    return {env_name: _secret(secret_manager, name) for env_name, name in config.credentials.items()}


def _secret(secret_manager: Optional[SecretManager], name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    if secret_manager is None:
        raise AuthError(f"Secret '{name}' is required but no secret store is configured.")
    try:
        return secret_manager.get_secret(name)
    except SecretError as exc:
        raise AuthError(f"Cannot read secret '{name}': {exc}") from exc


def build_strategy(
    config: BackupConfig,
    executor: Optional[CommandExecutor] = None,
    secret_manager: Optional[SecretManager] = None,
) -> Strategy:
    if config.method is BackupMethod.LOCAL:
        return ArchiveStrategy(Path(config.destination), config.prefix)

    executor = executor or SubprocessExecutor()
    env = resolve_credentials(config, secret_manager)
    if isinstance(executor, SubprocessExecutor):
        executor.hide(env.values())

    if config.method is BackupMethod.REPOSITORY:
        return RepositoryStrategy(config.destination, config.repository, executor, env)

    if config.method is BackupMethod.REMOTE:
        snapshots = ArchiveStrategy(config.remote.staging_path / config.destination_key, config.prefix)
        if config.remote.transport == "webdav":
            transport = WebDAVTransport(
                url=config.destination,
                token=_secret(secret_manager, config.remote.token_secret),
                login=_secret(secret_manager, config.remote.username_secret),
                password=_secret(secret_manager, config.remote.password_secret),
                timeout=config.remote.timeout,
            )
        else:
            transport = RcloneTransport(config.destination, config.remote, executor, env)
        return RemoteSyncStrategy(snapshots, transport)

    raise ConfigError(f"Unsupported backup method: {config.method}")  # pragma: no cover


def create_dispatcher(
    config: BackupConfig,
    *,
    executor: Optional[CommandExecutor] = None,
    secret_manager: Optional[SecretManager] = None,
    store: Optional[RecordStore] = None,
    strategy: Optional[Strategy] = None,
) -> BackupDispatcher:
    state = config.state_path
    return BackupDispatcher(
        config=config,
        store=store or JsonRecordStore(state / f"{config.destination_key}.records.json"),
        strategy=strategy or build_strategy(config, executor, secret_manager),
        lock=RunLock(state / f"{config.destination_key}.lock"),
    )


def run_backup(config: BackupConfig, **kwargs) -> BackupRecord:
    """Build a dispatcher for *config* and run one backup."""

    return create_dispatcher(config, **kwargs).run()


__all__ = [
    "BackupDispatcher",
    "Strategy",
    "build_strategy",
    "create_dispatcher",
    "resolve_credentials",
    "run_backup",
]
