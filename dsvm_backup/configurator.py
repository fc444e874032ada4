"""Interactive helper that writes the backup configuration file."""
from __future__ import annotations

from dataclasses import dataclass
from getpass import getpass
from pathlib import Path
from typing import Dict, List, Optional

from croniter import croniter

from .config import BackupConfig, RemoteConfig
from .models import BackupMethod
from .secrets import SecretManager


@dataclass
class InteractiveConfigurator:
    secret_manager: SecretManager

    def create_config(self) -> BackupConfig:
        print("Backup configuration for this VM. Press Ctrl+C to cancel.\n")

        method = self._prompt_method()
        source_paths = self._prompt_paths()
        retention_count = self._prompt_int("How many backups to keep [7]: ", default=7, minimum=1)
        schedule = self._prompt_schedule()

        credentials: Dict[str, str] = {}
        remote = RemoteConfig()
        if method is BackupMethod.LOCAL:
            destination = self._prompt_non_empty(
                "Directory for archives [/var/backups/dsvm]: ", default="/var/backups/dsvm"
            )
        elif method is BackupMethod.REPOSITORY:
            destination = self._prompt_non_empty("restic repository (path or URL): ")
            credentials["RESTIC_PASSWORD"] = self._prompt_secret(
                prompt="Repository password", suggested_name="RESTIC_PASSWORD"
            )
        else:
            remote = self._configure_remote()
            if remote.transport == "webdav":
                destination = self._prompt_non_empty("WebDAV folder URL (https://...): ")
            else:
                destination = self._prompt_non_empty("rclone destination (remote:path): ")

        config = BackupConfig(
            method=method,
            source_paths=source_paths,
            destination=destination,
            schedule=schedule,
            retention_count=retention_count,
            credentials=credentials,
            remote=remote,
        )
        config.validate()
        return config

    # ------------------------------------------------------------------
    def _configure_remote(self) -> RemoteConfig:
        use_webdav = self._prompt_bool("Upload over WebDAV instead of rclone? [y/N]: ", default=False)
        if not use_webdav:
            return RemoteConfig(transport="rclone")

        token_secret = username_secret = password_secret = None
        if self._prompt_bool("Use an OAuth token (recommended)? [Y/n]: ", default=True):
            token_secret = self._prompt_secret(prompt="WebDAV OAuth token", suggested_name="WEBDAV_TOKEN")
        else:
            username_secret = self._prompt_secret(
                prompt="WebDAV login", suggested_name="WEBDAV_LOGIN", update_existing=False
            )
            password_secret = self._prompt_secret(prompt="WebDAV password", suggested_name="WEBDAV_PASSWORD")
        return RemoteConfig(
            transport="webdav",
            token_secret=token_secret,
            username_secret=username_secret,
            password_secret=password_secret,
        )

    # ------------------------------------------------------------------
    def _prompt_method(self) -> BackupMethod:
        print("Choose the backup method:")
        print("  1. Local tar.gz archives")
        print("  2. restic repository")
        print("  3. Remote object storage")
        choices = {
            "1": BackupMethod.LOCAL,
            "local": BackupMethod.LOCAL,
            "2": BackupMethod.REPOSITORY,
            "repository": BackupMethod.REPOSITORY,
            "3": BackupMethod.REMOTE,
            "remote": BackupMethod.REMOTE,
        }
        while True:
            answer = input("Enter 1, 2 or 3 [1]: ").strip().lower()
            if not answer:
                return BackupMethod.LOCAL
            if answer in choices:
                return choices[answer]
            print("Invalid choice. Enter 1, 2 or 3.")

    def _prompt_paths(self) -> List[Path]:
        print("Paths to back up, one per line. Empty line to finish.")
        paths: List[Path] = []
        while True:
            answer = input(f"Path #{len(paths) + 1}: ").strip()
            if not answer:
                if paths:
                    return paths
                print("At least one path is required.")
                continue
            path = Path(answer).expanduser()
            if not path.exists():
                print(f"'{path}' does not exist.")
                continue
            if path not in paths:
                paths.append(path)

    def _prompt_schedule(self) -> str:
        while True:
            answer = self._prompt_non_empty("Cron schedule [0 2 * * *]: ", default="0 2 * * *")
            if croniter.is_valid(answer):
                return answer
            print("Not a valid cron expression.")

    # ------------------------------------------------------------------
    def _prompt_secret(self, *, prompt: str, suggested_name: str, update_existing: bool = True) -> str:
        existing = set(self.secret_manager.list_secrets())
        while True:
            name = self._prompt_non_empty(f"Secret name [{suggested_name}]: ", default=suggested_name)
            if name in existing and not update_existing:
                if not self._prompt_bool(f"Secret '{name}' exists. Use it unchanged? [Y/n]: ", default=True):
                    continue
                return name
            if name in existing:
                if not self._prompt_bool(f"Secret '{name}' exists. Overwrite it? [y/N]: ", default=False):
                    return name
            value = self._prompt_secret_value(prompt)
            self.secret_manager.set_secret(name, value)
            return name

    def _prompt_secret_value(self, prompt: str) -> str:
        while True:
            first = getpass(f"{prompt}: ")
            second = getpass("Repeat: ")
            if first != second:
                print("Values do not match, try again.")
                continue
            if not first:
                print("Value must not be empty.")
                continue
            return first

    def _prompt_bool(self, question: str, *, default: bool) -> bool:
        while True:
            answer = input(question).strip().lower()
            if not answer:
                return default
            if answer in {"y", "yes", "true", "1"}:
                return True
            if answer in {"n", "no", "false", "0"}:
                return False
            print("Please answer 'y' or 'n'.")

    def _prompt_non_empty(self, question: str, default: Optional[str] = None) -> str:
        while True:
            answer = input(question).strip()
            if answer:
                return answer
            if default is not None:
                return default
            print("Value must not be empty.")

    def _prompt_int(self, question: str, *, default: int, minimum: Optional[int] = None) -> int:
        while True:
            answer = input(question).strip()
            if not answer:
                return default
            try:
                value = int(answer)
            except ValueError:
                print("Enter a whole number.")
                continue
            if minimum is not None and value < minimum:
                print(f"Value must be at least {minimum}.")
                continue
            return value


__all__ = ["InteractiveConfigurator"]
