"""Tests for the cron-driven scheduler."""

import logging
import threading
from datetime import datetime
from pathlib import Path

from dsvm_backup.errors import LockError
from dsvm_backup.scheduler import BackupScheduler, SchedulerState, crontab_line


def test_trigger_while_running_is_skipped(caplog):
    results = []

    def run():
        # a second trigger arrives while this run is still in progress
        results.append(scheduler.trigger())
        return "record"

    scheduler = BackupScheduler("0 2 * * *", run)

    with caplog.at_level(logging.WARNING, logger="dsvm_backup.scheduler"):
        assert scheduler.trigger() == "record"

    assert results == [None]
    assert scheduler.state is SchedulerState.IDLE
    assert any("reason=running" in r.getMessage() for r in caplog.records)


def test_trigger_with_foreign_lock_is_skipped(caplog):
    def run():
        raise LockError("held by pid 42")

    scheduler = BackupScheduler("0 2 * * *", run)

    with caplog.at_level(logging.WARNING, logger="dsvm_backup.scheduler"):
        assert scheduler.trigger() is None

    assert scheduler.state is SchedulerState.IDLE
    assert any("reason=locked" in r.getMessage() for r in caplog.records)


def test_state_resets_after_failure():
    def run():
        raise RuntimeError("boom")

    scheduler = BackupScheduler("0 2 * * *", run)
    try:
        scheduler.trigger()
    except RuntimeError:
        pass
    assert scheduler.state is SchedulerState.IDLE


def test_next_run_follows_cron():
    scheduler = BackupScheduler("0 2 * * *", lambda: None)
    assert scheduler.next_run(datetime(2026, 10, 19, 1, 30)) == datetime(2026, 10, 19, 2, 0)
    assert scheduler.next_run(datetime(2026, 10, 19, 2, 0)) == datetime(2026, 10, 20, 2, 0)


def test_run_forever_triggers_until_stopped():
    calls = []

    class Stop:
        """Lets two waits elapse, then reports the event as set."""

        def __init__(self):
            self.waits = []

        def is_set(self):
            return len(self.waits) > 2

        def wait(self, timeout):
            self.waits.append(timeout)
            return len(self.waits) > 2

    scheduler = BackupScheduler("*/5 * * * *", lambda: calls.append(1), clock=lambda: datetime(2026, 10, 19, 2, 1))
    stop = Stop()

    scheduler.run_forever(stop)

    assert len(calls) == 2
    assert stop.waits[0] == 240


def test_run_forever_returns_when_event_set():
    stop = threading.Event()
    stop.set()
    calls = []
    BackupScheduler("* * * * *", lambda: calls.append(1)).run_forever(stop)
    assert calls == []


def test_crontab_line(make_config, tmp_path):
    config = make_config(schedule="30 3 * * 1-5", log_file=str(tmp_path / "logs" / "backup.log"))
    config_path = tmp_path / "config.yaml"

    line = crontab_line(config, config_path, executable="/opt/venv/bin/backup")

    assert line == (
        f"30 3 * * 1-5 /opt/venv/bin/backup --config {config_path.resolve()} trigger "
        f">> {tmp_path / 'logs' / 'backup.log'} 2>&1"
    )


def test_crontab_line_defaults_log_to_state_directory(make_config, tmp_path):
    config = make_config()
    line = crontab_line(config, Path(tmp_path / "config.yaml"))
    assert line.endswith(f">> {config.state_path / 'cron.log'} 2>&1")
    assert " backup --config " in line
