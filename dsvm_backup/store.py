"""Persistence of backup records."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .errors import CorruptionError, StorageError
from .models import BackupRecord

LOGGER = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Where the dispatcher keeps its records. Passed in explicitly."""

    def append(self, record: BackupRecord) -> None:
        ...

    def records(self) -> List[BackupRecord]:
        ...

    def get(self, identifier: str) -> Optional[BackupRecord]:
        ...

    def remove(self, identifier: str) -> None:
        ...


@dataclass
class JsonRecordStore:
    """Records kept in a single JSON document, rewritten atomically."""

    path: Path

    def append(self, record: BackupRecord) -> None:
        records = self.records()
        if any(existing.identifier == record.identifier for existing in records):
            raise StorageError(f"Record '{record.identifier}' already exists.")
        records.append(record)
        self._write(records)

    def records(self) -> List[BackupRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return [BackupRecord.from_dict(item) for item in data.get("records", [])]
        except (ValueError, KeyError) as exc:
            raise CorruptionError(f"Record log '{self.path}' is damaged: {exc}") from exc

    def get(self, identifier: str) -> Optional[BackupRecord]:
        for record in self.records():
            if record.identifier == identifier:
                return record
        return None

    def remove(self, identifier: str) -> None:
        records = [record for record in self.records() if record.identifier != identifier]
        self._write(records)

    # ------------------------------------------------------------------
    def _write(self, records: List[BackupRecord]) -> None:
        payload: Dict[str, object] = {"records": [record.to_dict() for record in records]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            raise StorageError(f"Cannot write record log '{self.path}': {exc}") from exc
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        LOGGER.debug("Record log saved: %s (%d records)", self.path, len(records))


__all__ = ["JsonRecordStore", "RecordStore"]
