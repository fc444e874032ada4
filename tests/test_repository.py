"""Tests for the restic-backed repository strategy."""

import json
from datetime import datetime, timezone

import pytest

from dsvm_backup.backup import BackupDispatcher, build_strategy
from dsvm_backup.config import RepositoryConfig
from dsvm_backup.errors import AuthError, CorruptionError, RepositoryError
from dsvm_backup.executor import ExitStatus
from dsvm_backup.lock import RunLock
from dsvm_backup.models import BackupMethod, BackupRecord, RecordStatus
from dsvm_backup.repository import RepositoryStrategy

from tests.doubles import FakeExecutor, SteppingClock

SUMMARY = json.dumps(
    {
        "message_type": "summary",
        "files_new": 3,
        "data_added": 1234,
        "total_bytes_processed": 5678,
        "snapshot_id": "4f5e6d7c",
    }
)


def _subcommand(command):
    # restic --repo <repo> [extra args] <subcommand> ...
    return command[3]


def _strategy(handler, extra_args=None):
    executor = FakeExecutor(handler)
    settings = RepositoryConfig(extra_args=extra_args or [])
    strategy = RepositoryStrategy("/srv/restic", settings, executor, {"RESTIC_PASSWORD": "pw"})
    return strategy, executor


def _record(location="4f5e6d7c"):
    return BackupRecord(
        identifier="20261019T020000",
        method=BackupMethod.REPOSITORY,
        size_bytes=1234,
        created_at=datetime(2026, 10, 19, tzinfo=timezone.utc),
        status=RecordStatus.SUCCESS,
        location=location,
    )


def test_prepare_initializes_missing_repository():
    def handler(command):
        if _subcommand(command) == "cat":
            return ExitStatus(10, stderr="Fatal: repository does not exist")
        return ExitStatus(0)

    strategy, executor = _strategy(handler)
    strategy.prepare()

    assert [_subcommand(c) for c in executor.commands] == ["cat", "init"]
    assert executor.envs[-1] == {"RESTIC_PASSWORD": "pw"}


def test_prepare_existing_repository_is_left_alone():
    strategy, executor = _strategy(lambda command: ExitStatus(0))
    strategy.prepare()
    assert [_subcommand(c) for c in executor.commands] == ["cat"]


@pytest.mark.parametrize(
    "status",
    [ExitStatus(12, stderr="Fatal: wrong password or no key found"), ExitStatus(1, stderr="Fatal: wrong password")],
)
def test_wrong_password_is_auth_error(status):
    strategy, _ = _strategy(lambda command: status)
    with pytest.raises(AuthError):
        strategy.prepare()


def test_archive_reports_snapshot_and_size():
    strategy, executor = _strategy(lambda command: ExitStatus(0, stdout=SUMMARY + "\n"))

    result = strategy.archive("20261019T020000", ["/home/ds"])

    assert result.location == "4f5e6d7c"
    assert result.size_bytes == 1234
    assert result.skipped_paths == []
    command = executor.commands[0]
    assert command[:3] == ["restic", "--repo", "/srv/restic"]
    assert command[3:] == ["backup", "--json", "--tag", "20261019T020000", "/home/ds"]


def test_archive_exit_three_is_partial():
    error = json.dumps(
        {"message_type": "error", "error": {"message": "permission denied"}, "during": "archival", "item": "/home/ds/x"}
    )
    strategy, _ = _strategy(lambda command: ExitStatus(3, stdout=error + "\n" + SUMMARY))

    result = strategy.archive("20261019T020000", ["/home/ds"])

    assert result.skipped_paths == ["/home/ds/x"]


def test_archive_failure_is_repository_error():
    strategy, _ = _strategy(lambda command: ExitStatus(1, stderr="Fatal: unable to save snapshot"))
    with pytest.raises(RepositoryError) as excinfo:
        strategy.archive("20261019T020000", ["/home/ds"])
    assert excinfo.value.returncode == 1


def test_extra_args_precede_subcommand():
    strategy, executor = _strategy(lambda command: ExitStatus(0), extra_args=["--cache-dir", "/tmp/c"])
    strategy.delete(_record())
    assert executor.commands[0] == [
        "restic", "--repo", "/srv/restic", "--cache-dir", "/tmp/c", "forget", "--prune", "4f5e6d7c",
    ]


def test_restore_targets_staging(tmp_path):
    strategy, executor = _strategy(lambda command: ExitStatus(0))
    strategy.restore(_record(), tmp_path)
    assert executor.commands[0][3:] == ["restore", "4f5e6d7c", "--target", str(tmp_path)]


def test_verify_missing_snapshot_is_corruption():
    def handler(command):
        if _subcommand(command) == "snapshots":
            return ExitStatus(0, stdout="[]")
        return ExitStatus(0)

    strategy, _ = _strategy(handler)
    with pytest.raises(CorruptionError):
        strategy.verify(_record())


def test_verify_check_failure_is_corruption():
    def handler(command):
        if _subcommand(command) == "snapshots":
            return ExitStatus(0, stdout='[{"id": "4f5e6d7c"}]')
        return ExitStatus(1, stderr="Fatal: repository contains errors")

    strategy, _ = _strategy(handler)
    with pytest.raises(CorruptionError):
        strategy.verify(_record())


def test_dispatcher_records_repository_snapshot(make_config, memory_store, tmp_path):
    config = make_config(
        method=BackupMethod.REPOSITORY,
        destination="/srv/restic",
        credentials={"RESTIC_PASSWORD": "restic-password"},
    )

    class Secrets:
        def get_secret(self, name):
            assert name == "restic-password"
            return "pw"

    executor = FakeExecutor(lambda command: ExitStatus(0, stdout=SUMMARY))
    dispatcher = BackupDispatcher(
        config=config,
        store=memory_store,
        strategy=build_strategy(config, executor, Secrets()),
        lock=RunLock(tmp_path / "state" / "run.lock"),
        clock=SteppingClock(),
    )

    record = dispatcher.run()

    assert record.method is BackupMethod.REPOSITORY
    assert record.location == "4f5e6d7c"
    assert record.status is RecordStatus.SUCCESS
    assert all(env == {"RESTIC_PASSWORD": "pw"} for env in executor.envs)
