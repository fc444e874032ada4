"""Unattended, cron-driven backup runs."""
from __future__ import annotations

import enum
import logging
import shlex
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from croniter import croniter

from .config import BackupConfig
from .errors import BackupError, LockError
from .models import BackupRecord

LOGGER = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class BackupScheduler:
    """Fires backup runs on a cron schedule without ever overlapping them.

    A trigger that arrives while a run is in progress, in this process or in
    another one holding the destination lock, is logged and dropped.
    """

    def __init__(
        self,
        schedule: str,
        run: Callable[[], BackupRecord],
        logger: logging.Logger = LOGGER,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.schedule = schedule
        self._run = run
        self.logger = logger
        self.clock = clock
        self.state = SchedulerState.IDLE
        self._state_lock = threading.Lock()

    def trigger(self) -> Optional[BackupRecord]:
        with self._state_lock:
            if self.state is SchedulerState.RUNNING:
                self.logger.warning("trigger skipped reason=running")
                return None
            self.state = SchedulerState.RUNNING
        try:
            return self._run()
        except LockError as exc:
            self.logger.warning("trigger skipped reason=locked detail=%s", exc)
            return None
        finally:
            with self._state_lock:
                self.state = SchedulerState.IDLE

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        return croniter(self.schedule, after or self.clock()).get_next(datetime)

    def run_forever(self, stop: threading.Event) -> None:
        self.logger.info("scheduler started schedule=%r", self.schedule)
        while not stop.is_set():
            now = self.clock()
            upcoming = self.next_run(now)
            self.logger.debug("next run at %s", upcoming.isoformat())
            if stop.wait(max((upcoming - now).total_seconds(), 0)):
                break
            try:
                self.trigger()
            except BackupError as exc:
                self.logger.error("scheduled run failed: %s", exc)
        self.logger.info("scheduler stopped")


def crontab_line(config: BackupConfig, config_path: Path, executable: str = "backup") -> str:
    """Host crontab entry that fires ``backup trigger`` on the configured schedule."""

    log_path = config.log_file or str(config.state_path / "cron.log")
    resolved = Path(config_path).expanduser().resolve()
    return (
        f"{config.schedule} {shlex.quote(executable)} --config {shlex.quote(str(resolved))} "
        f"trigger >> {shlex.quote(log_path)} 2>&1"
    )


__all__ = ["BackupScheduler", "SchedulerState", "crontab_line"]
