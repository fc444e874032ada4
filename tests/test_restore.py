"""Tests for restoring files from a backup."""

import errno
import shutil
from pathlib import Path

import pytest

from dsvm_backup.backup import BackupDispatcher, build_strategy
from dsvm_backup.errors import CorruptionError, NotFoundError
from dsvm_backup.lock import RunLock
from dsvm_backup.models import RestoreRequest, RestoreState
from dsvm_backup.restore import restore

from tests.doubles import SteppingClock


@pytest.fixture
def dispatcher(make_config, memory_store, tmp_path):
    config = make_config()
    return BackupDispatcher(
        config=config,
        store=memory_store,
        strategy=build_strategy(config),
        lock=RunLock(tmp_path / "state" / "run.lock"),
        clock=SteppingClock(),
    )


def test_unknown_identifier_touches_nothing(dispatcher, source_dir):
    dispatcher.run()
    (source_dir / "env.yml").write_text("changed")

    with pytest.raises(NotFoundError):
        dispatcher.restore(RestoreRequest("19990101T000000", [source_dir]))

    assert (source_dir / "env.yml").read_text() == "changed"


def test_deleted_files_are_brought_back(dispatcher, source_dir):
    record = dispatcher.run()
    (source_dir / "notebooks" / "analysis.ipynb").unlink()

    outcome = dispatcher.restore(RestoreRequest(record.identifier))

    assert outcome.state is RestoreState.APPLIED
    assert outcome.applied_paths == [source_dir / "notebooks" / "analysis.ipynb"]
    assert (source_dir / "notebooks" / "analysis.ipynb").read_text() == '{"cells": []}'


def test_restore_twice_has_no_conflicts(dispatcher, source_dir):
    record = dispatcher.run()
    (source_dir / "env.yml").unlink()

    dispatcher.restore(RestoreRequest(record.identifier))
    second = dispatcher.restore(RestoreRequest(record.identifier))

    assert second.conflicts == []
    assert second.applied_paths == []
    assert source_dir / "env.yml" in second.unchanged_paths


def test_changed_file_is_a_conflict(dispatcher, source_dir):
    record = dispatcher.run()
    (source_dir / "env.yml").write_text("name: other\n")

    outcome = dispatcher.restore(RestoreRequest(record.identifier))

    assert outcome.state is RestoreState.PARTIAL
    assert outcome.conflicts == [source_dir / "env.yml"]
    assert (source_dir / "env.yml").read_text() == "name: other\n"


def test_force_overwrites_conflicts(dispatcher, source_dir):
    record = dispatcher.run()
    (source_dir / "env.yml").write_text("name: other\n")

    outcome = dispatcher.restore(RestoreRequest(record.identifier, force=True))

    assert outcome.conflicts == []
    assert source_dir / "env.yml" in outcome.applied_paths
    assert (source_dir / "env.yml").read_text() == "name: ds\n"


def test_target_paths_limit_scope(dispatcher, source_dir):
    record = dispatcher.run()
    (source_dir / "env.yml").unlink()
    (source_dir / "secret.txt").unlink()

    outcome = dispatcher.restore(RestoreRequest(record.identifier, [source_dir / "env.yml"]))

    assert outcome.applied_paths == [source_dir / "env.yml"]
    assert not (source_dir / "secret.txt").exists()


def test_paths_not_in_backup_are_reported(dispatcher, source_dir, tmp_path):
    record = dispatcher.run()
    stranger = tmp_path / "elsewhere"

    outcome = dispatcher.restore(RestoreRequest(record.identifier, [stranger]))

    assert outcome.missing_paths == [stranger]
    assert outcome.state is RestoreState.PARTIAL


def test_target_root_relocates_files(dispatcher, source_dir, tmp_path):
    record = dispatcher.run()
    root = tmp_path / "relocated"

    outcome = dispatcher.restore(RestoreRequest(record.identifier, target_root=root))

    relocated = root / str(source_dir).lstrip("/") / "env.yml"
    assert relocated.read_text() == "name: ds\n"
    assert relocated in outcome.applied_paths


def test_corrupt_archive_aborts(dispatcher, source_dir):
    record = dispatcher.run()
    Path(record.location).write_bytes(b"garbage")
    (source_dir / "env.yml").unlink()

    with pytest.raises(CorruptionError):
        dispatcher.restore(RestoreRequest(record.identifier))

    assert not (source_dir / "env.yml").exists()


def test_restore_function_with_injected_store(dispatcher, memory_store, source_dir):
    record = dispatcher.run()
    (source_dir / "secret.txt").unlink()

    outcome = restore(RestoreRequest(record.identifier), memory_store, dispatcher.strategy)

    assert outcome.applied_paths == [source_dir / "secret.txt"]


def test_unwritable_target_root_is_reported(dispatcher, source_dir, tmp_path):
    record = dispatcher.run()
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    outcome = dispatcher.restore(RestoreRequest(record.identifier, target_root=blocker))

    assert outcome.state is RestoreState.PARTIAL
    assert outcome.applied_paths == []
    assert len(outcome.failed_paths) == 3
    assert blocker.read_text() == "not a directory"


def test_one_failing_file_does_not_stop_the_rest(dispatcher, source_dir, monkeypatch):
    record = dispatcher.run()
    (source_dir / "env.yml").unlink()
    (source_dir / "secret.txt").unlink()
    original = shutil.copy2

    def copy2(src, dst, **kwargs):
        if Path(dst).name == "env.yml":
            raise PermissionError(errno.EACCES, "Permission denied", str(dst))
        return original(src, dst, **kwargs)

    monkeypatch.setattr("dsvm_backup.restore.shutil.copy2", copy2)

    outcome = dispatcher.restore(RestoreRequest(record.identifier))

    assert outcome.failed_paths == [source_dir / "env.yml"]
    assert outcome.applied_paths == [source_dir / "secret.txt"]
    assert outcome.state is RestoreState.PARTIAL
