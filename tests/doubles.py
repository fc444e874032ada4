"""Test doubles for the executor, record store and clock."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from dsvm_backup.executor import ExitStatus
from dsvm_backup.models import BackupRecord


class FakeExecutor:
    """Records every command and answers through a handler."""

    def __init__(self, handler: Optional[Callable[[List[str]], ExitStatus]] = None):
        self.handler = handler or (lambda command: ExitStatus(0))
        self.commands: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []

    def execute(self, command: Sequence[str], *, env=None, timeout=None) -> ExitStatus:
        command = list(command)
        self.commands.append(command)
        self.envs.append(dict(env or {}))
        return self.handler(command)


class MemoryRecordStore:
    """In-memory record store."""

    def __init__(self):
        self._records: List[BackupRecord] = []

    def append(self, record: BackupRecord) -> None:
        self._records.append(record)

    def records(self) -> List[BackupRecord]:
        return list(self._records)

    def get(self, identifier: str) -> Optional[BackupRecord]:
        for record in self._records:
            if record.identifier == identifier:
                return record
        return None

    def remove(self, identifier: str) -> None:
        self._records = [r for r in self._records if r.identifier != identifier]


class SteppingClock:
    """Returns a new timestamp one minute later on every call."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(minutes=1)
        return value
