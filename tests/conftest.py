"""Shared fixtures."""

from pathlib import Path
from typing import Callable

import pytest

from dsvm_backup.config import BackupConfig
from dsvm_backup.models import BackupMethod

from tests.doubles import MemoryRecordStore


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small tree to back up."""
    data = tmp_path / "data"
    (data / "notebooks").mkdir(parents=True)
    (data / "notebooks" / "analysis.ipynb").write_text('{"cells": []}')
    (data / "env.yml").write_text("name: ds\n")
    (data / "secret.txt").write_text("token")
    return data


@pytest.fixture
def make_config(tmp_path: Path, source_dir: Path) -> Callable[..., BackupConfig]:
    def factory(**overrides) -> BackupConfig:
        values = {
            "method": BackupMethod.LOCAL,
            "source_paths": [source_dir],
            "destination": str(tmp_path / "backups"),
            "retention_count": 7,
            "state_directory": str(tmp_path / "state"),
        }
        values.update(overrides)
        config = BackupConfig(**values)
        config.validate()
        return config

    return factory


@pytest.fixture
def memory_store() -> MemoryRecordStore:
    return MemoryRecordStore()
