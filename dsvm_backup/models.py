"""Records and value types exchanged between the dispatcher, strategies and store."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class BackupMethod(str, enum.Enum):
    LOCAL = "local"
    REPOSITORY = "repository"
    REMOTE = "remote"


class RecordStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class RestoreState(str, enum.Enum):
    APPLIED = "applied"
    PARTIAL = "partial"


@dataclass(frozen=True)
class BackupRecord:
    """Immutable description of one completed backup run."""

    identifier: str
    method: BackupMethod
    size_bytes: int
    created_at: datetime
    status: RecordStatus
    location: str = ""
    checksum: Optional[str] = None
    skipped_paths: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> "BackupRecord":
        return cls(
            identifier=data["identifier"],
            method=BackupMethod(data["method"]),
            size_bytes=int(data.get("size_bytes", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            status=RecordStatus(data["status"]),
            location=data.get("location", ""),
            checksum=data.get("checksum"),
            skipped_paths=tuple(data.get("skipped_paths", ())),
        )

    def to_dict(self) -> Dict:
        result: Dict[str, object] = {
            "identifier": self.identifier,
            "method": self.method.value,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "location": self.location,
            "checksum": self.checksum,
            "skipped_paths": list(self.skipped_paths),
        }
        return {key: value for key, value in result.items() if value is not None}


@dataclass
class StrategyResult:
    """What a strategy reports back after ``archive``."""

    location: str
    size_bytes: int
    checksum: Optional[str] = None
    skipped_paths: List[str] = field(default_factory=list)


@dataclass
class RestoreRequest:
    identifier: str
    target_paths: List[Path] = field(default_factory=list)
    force: bool = False
    target_root: Optional[Path] = None


@dataclass
class RestoreOutcome:
    identifier: str
    applied_paths: List[Path] = field(default_factory=list)
    conflicts: List[Path] = field(default_factory=list)
    unchanged_paths: List[Path] = field(default_factory=list)
    missing_paths: List[Path] = field(default_factory=list)
    failed_paths: List[Path] = field(default_factory=list)

    @property
    def state(self) -> RestoreState:
        if self.conflicts or self.missing_paths or self.failed_paths:
            return RestoreState.PARTIAL
        return RestoreState.APPLIED


__all__ = [
    "BackupMethod",
    "BackupRecord",
    "RecordStatus",
    "RestoreOutcome",
    "RestoreRequest",
    "RestoreState",
    "StrategyResult",
]
