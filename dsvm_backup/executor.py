"""Process spawning for the external repository and transport tools."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from .errors import ExecutionError
from .utils import mask_sensitive

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitStatus:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandExecutor(Protocol):
    """Capability used by strategies to run external tools."""

    def execute(
        self,
        command: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> ExitStatus:
        ...


@dataclass
class SubprocessExecutor:
    """Run commands with :func:`subprocess.run`, masking secrets in the log."""

    secrets: List[str] = field(default_factory=list)
    logger: logging.Logger = LOGGER

    def hide(self, values: Iterable[str]) -> None:
        self.secrets.extend(value for value in values if value)

    def execute(
        self,
        command: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> ExitStatus:
        printable = mask_sensitive(" ".join(command), self.secrets)
        self.logger.info("Running command: %s", printable)
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        try:
            result = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                env=full_env,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(f"Command '{command[0]}' not found. Is it installed?") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExecutionError(f"Command '{printable}' exceeded the {timeout} s timeout.") from exc
        if result.stdout:
            self.logger.debug("STDOUT: %s", mask_sensitive(result.stdout.strip(), self.secrets))
        if result.stderr:
            self.logger.warning("STDERR: %s", mask_sensitive(result.stderr.strip(), self.secrets))
        return ExitStatus(result.returncode, result.stdout, result.stderr)


__all__ = ["CommandExecutor", "ExitStatus", "SubprocessExecutor"]
