"""Deduplicating backups through the restic command line tool.

Deduplication, encryption and content addressing all happen inside restic.
This module only makes sure the repository exists, hands over credentials
through the environment, runs ``backup``/``forget``/``restore``/``check`` and
turns exit codes into records or exceptions.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import RepositoryConfig
from .errors import AuthError, CorruptionError, RepositoryError
from .executor import CommandExecutor, ExitStatus
from .models import BackupMethod, BackupRecord, StrategyResult

LOGGER = logging.getLogger(__name__)

EXIT_PARTIAL = 3
EXIT_NO_REPOSITORY = 10
EXIT_LOCKED = 11
EXIT_WRONG_PASSWORD = 12


class RepositoryStrategy:
    method = BackupMethod.REPOSITORY

    def __init__(
        self,
        repository: str,
        settings: RepositoryConfig,
        executor: CommandExecutor,
        env: Optional[Dict[str, str]] = None,
        logger: logging.Logger = LOGGER,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.executor = executor
        self.env = dict(env or {})
        self.logger = logger

    # ------------------------------------------------------------------
    def prepare(self) -> None:
        status = self._run("cat", "config")
        if status.ok:
            return
        self._raise_for_auth(status)
        if not self._repository_missing(status):
            self._raise_for_status(status, "cat config")
        self.logger.info("Initializing repository %s", self.repository)
        status = self._run("init")
        if not status.ok:
            self._raise_for_status(status, "init")

    def archive(self, identifier: str, source_paths: Iterable[Path]) -> StrategyResult:
        paths = [str(path) for path in source_paths]
        status = self._run("backup", "--json", "--tag", identifier, *paths)
        if status.returncode not in (0, EXIT_PARTIAL):
            self._raise_for_status(status, "backup")

        summary: Dict = {}
        skipped: List[str] = []
        for message in _json_lines(status.stdout):
            kind = message.get("message_type")
            if kind == "summary":
                summary = message
            elif kind == "error":
                skipped.append(str(message.get("item") or message.get("error", {}).get("message", "")))

        snapshot_id = summary.get("snapshot_id")
        if not snapshot_id:
            raise RepositoryError("restic backup finished without reporting a snapshot id.", status.returncode)
        if status.returncode == EXIT_PARTIAL and not skipped:
            skipped.append("(unreadable files reported by restic)")
        return StrategyResult(
            location=snapshot_id,
            size_bytes=int(summary.get("data_added", 0)),
            skipped_paths=skipped,
        )

    def restore(self, record: BackupRecord, staging: Path) -> None:
        status = self._run("restore", record.location, "--target", str(staging))
        if not status.ok:
            self._raise_for_status(status, "restore")

    def verify(self, record: BackupRecord) -> None:
        status = self._run("snapshots", "--json", record.location)
        if not status.ok:
            self._raise_for_auth(status)
            raise CorruptionError(f"Snapshot '{record.location}' not found in {self.repository}.")
        try:
            snapshots = json.loads(status.stdout or "[]")
        except ValueError as exc:
            raise RepositoryError(f"Unexpected output from restic snapshots: {exc}") from exc
        if not snapshots:
            raise CorruptionError(f"Snapshot '{record.location}' not found in {self.repository}.")

        status = self._run("check")
        if not status.ok:
            self._raise_for_auth(status)
            raise CorruptionError(
                f"restic check reported errors in {self.repository}: {status.stderr.strip()}"
            )

    def owns(self, record: BackupRecord) -> bool:
        return bool(record.location)

    def delete(self, record: BackupRecord) -> None:
        status = self._run("forget", "--prune", record.location)
        if not status.ok:
            self._raise_for_status(status, "forget")
        self.logger.info("Forgot snapshot %s", record.location)

    # ------------------------------------------------------------------
    def _run(self, *args: str) -> ExitStatus:
        command = [self.settings.binary, "--repo", self.repository, *self.settings.extra_args, *args]
        return self.executor.execute(command, env=self.env, timeout=self.settings.timeout)

    def _repository_missing(self, status: ExitStatus) -> bool:
        if status.returncode == EXIT_NO_REPOSITORY:
            return True
        stderr = status.stderr.lower()
        return "does not exist" in stderr or "is there a repository at" in stderr

    def _raise_for_auth(self, status: ExitStatus) -> None:
        if status.returncode == EXIT_WRONG_PASSWORD or "wrong password" in status.stderr.lower():
            raise AuthError(f"Repository {self.repository} rejected the password.")

    def _raise_for_status(self, status: ExitStatus, action: str) -> None:
        self._raise_for_auth(status)
        if status.returncode == EXIT_LOCKED:
            raise RepositoryError(f"Repository {self.repository} is locked by another process.", status.returncode)
        raise RepositoryError(
            f"restic {action} failed with code {status.returncode}: {status.stderr.strip()}",
            status.returncode,
        )


def _json_lines(output: str) -> Iterable[Dict]:
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            yield json.loads(line)
        except ValueError:
            continue


__all__ = ["RepositoryStrategy"]
