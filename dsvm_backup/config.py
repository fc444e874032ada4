"""Configuration models and helpers for the backup tool."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from croniter import croniter

from .errors import BackupError
from .models import BackupMethod
from .utils import slugify

CONFIG_FILENAME = "config.yaml"
DEFAULT_STATE_DIRECTORY = "~/.local/state/dsvm-backup"
DEFAULT_STAGING_DIRECTORY = "~/.cache/dsvm-backup/staging"
REMOTE_TRANSPORTS = {"rclone", "webdav"}


class ConfigError(BackupError):
    """Raised when configuration loading or validation fails."""


@dataclass
class RepositoryConfig:
    binary: str = "restic"
    extra_args: List[str] = field(default_factory=list)
    timeout: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RepositoryConfig":
        data = data or {}
        return cls(
            binary=data.get("binary") or "restic",
            extra_args=[str(arg) for arg in data.get("extra_args") or []],
            timeout=_safe_int(data.get("timeout")),
        )

    def to_dict(self) -> Dict:
        result: Dict[str, object] = {
            "binary": self.binary,
            "extra_args": self.extra_args,
            "timeout": self.timeout,
        }
        return {key: value for key, value in result.items() if value not in (None, [])}


@dataclass
class RemoteConfig:
    transport: str = "rclone"
    binary: str = "rclone"
    staging_directory: str = DEFAULT_STAGING_DIRECTORY
    extra_args: List[str] = field(default_factory=list)
    timeout: Optional[int] = None
    token_secret: Optional[str] = None
    username_secret: Optional[str] = None
    password_secret: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RemoteConfig":
        data = data or {}
        return cls(
            transport=str(data.get("transport") or "rclone").lower(),
            binary=data.get("binary") or "rclone",
            staging_directory=data.get("staging_directory") or DEFAULT_STAGING_DIRECTORY,
            extra_args=[str(arg) for arg in data.get("extra_args") or []],
            timeout=_safe_int(data.get("timeout")),
            token_secret=data.get("token_secret"),
            username_secret=data.get("username_secret"),
            password_secret=data.get("password_secret"),
        )

    def to_dict(self) -> Dict:
        result: Dict[str, object] = {
            "transport": self.transport,
            "binary": self.binary,
            "staging_directory": self.staging_directory,
            "extra_args": self.extra_args,
            "timeout": self.timeout,
            "token_secret": self.token_secret,
            "username_secret": self.username_secret,
            "password_secret": self.password_secret,
        }
        return {key: value for key, value in result.items() if value not in (None, [])}

    @property
    def staging_path(self) -> Path:
        return Path(self.staging_directory).expanduser()


@dataclass
class BackupConfig:
    method: BackupMethod
    source_paths: List[Path]
    destination: str
    schedule: str = "0 2 * * *"
    retention_count: int = 7
    prefix: str = "dsvm"
    credentials: Dict[str, str] = field(default_factory=dict)
    state_directory: Optional[str] = None
    log_file: Optional[str] = None
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    extra: Dict[str, object] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.source_paths:
            raise ConfigError("At least one entry is required in 'source_paths'.")
        if not self.destination:
            raise ConfigError("Field 'destination' must not be empty.")
        if self.retention_count is None or self.retention_count < 1:
            raise ConfigError("Field 'retention_count' must be a positive integer.")
        if not croniter.is_valid(self.schedule):
            raise ConfigError(f"Field 'schedule' is not a valid cron expression: '{self.schedule}'.")
        if not self.prefix or slugify(self.prefix, "") != self.prefix:
            raise ConfigError(
                f"Field 'prefix' may only contain letters, digits and underscores: '{self.prefix}'."
            )

        if self.method is BackupMethod.LOCAL and "://" in self.destination:
            raise ConfigError("Method 'local' needs a filesystem path as 'destination'.")
        if self.method is BackupMethod.REPOSITORY and not self.credentials:
            raise ConfigError(
                "Method 'repository' needs 'credentials' (for example RESTIC_PASSWORD: <secret name>)."
            )
        if self.method is BackupMethod.REMOTE:
            if self.remote.transport not in REMOTE_TRANSPORTS:
                raise ConfigError(
                    f"Unknown remote transport '{self.remote.transport}'. Use 'rclone' or 'webdav'."
                )
            if self.remote.transport == "webdav" and not self.destination.startswith(("http://", "https://")):
                raise ConfigError("Transport 'webdav' needs an http(s) URL as 'destination'.")
            if self.remote.transport == "rclone" and ":" not in self.destination:
                raise ConfigError("Transport 'rclone' needs a 'remote:path' destination.")

    @property
    def state_path(self) -> Path:
        return Path(self.state_directory or DEFAULT_STATE_DIRECTORY).expanduser()

    @property
    def destination_key(self) -> str:
        """Stable file-name-safe key identifying the destination.

        The slug alone is lossy (``/x/y_z`` and ``/x_y/z`` share one), so a
        short digest of the raw destination is appended.
        """

        digest = hashlib.sha256(self.destination.encode("utf-8")).hexdigest()[:10]
        return f"{slugify(self.destination, 'destination')}_{digest}"

    @classmethod
    def from_dict(cls, data: Dict) -> "BackupConfig":
        if not isinstance(data, dict):
            raise ConfigError("Section 'backup' must be a mapping.")
        raw_method = str(data.get("method", "local")).lower()
        try:
            method = BackupMethod(raw_method)
        except ValueError:
            raise ConfigError(
                f"Unknown backup method '{raw_method}'. Use 'local', 'repository' or 'remote'."
            ) from None

        raw_sources = data.get("source_paths") or []
        if isinstance(raw_sources, str):
            raw_sources = [raw_sources]
        source_paths: List[Path] = []
        for item in raw_sources:
            path = Path(str(item)).expanduser()
            if path not in source_paths:
                source_paths.append(path)

        credentials = data.get("credentials") or {}
        if not isinstance(credentials, dict):
            raise ConfigError("Field 'credentials' must map environment variables to secret names.")

        known_keys = {
            "method",
            "source_paths",
            "destination",
            "schedule",
            "retention_count",
            "prefix",
            "credentials",
            "state_directory",
            "log_file",
            "repository",
            "remote",
        }
        extra = {key: value for key, value in data.items() if key not in known_keys}
        config = cls(
            method=method,
            source_paths=source_paths,
            destination=str(data.get("destination") or ""),
            schedule=str(data.get("schedule") or "0 2 * * *"),
            retention_count=_safe_int(data.get("retention_count"), default=7),
            prefix=str(data.get("prefix") or "dsvm"),
            credentials={str(key): str(value) for key, value in credentials.items()},
            state_directory=data.get("state_directory"),
            log_file=data.get("log_file"),
            repository=RepositoryConfig.from_dict(data.get("repository")),
            remote=RemoteConfig.from_dict(data.get("remote")),
            extra=extra,
        )
        config.validate()
        return config

    def to_dict(self) -> Dict:
        result: Dict[str, object] = {
            "method": self.method.value,
            "source_paths": [str(path) for path in self.source_paths],
            "destination": self.destination,
            "schedule": self.schedule,
            "retention_count": self.retention_count,
            "prefix": self.prefix,
            "credentials": self.credentials,
            "state_directory": self.state_directory,
            "log_file": self.log_file,
            "repository": self.repository.to_dict(),
            "remote": self.remote.to_dict(),
        }
        result.update(self.extra)
        cleaned: Dict[str, object] = {}
        for key, value in result.items():
            if value in (None, {}, []):
                continue
            cleaned[key] = value
        return cleaned


# ---------------------------------------------------------------------------
def _safe_int(value, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Value '{value}' is not an integer.") from None


# ---------------------------------------------------------------------------
def load_config(path: Path = Path(CONFIG_FILENAME)) -> BackupConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' not found. Create it with 'backup configure'.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not data or "backup" not in data:
        raise ConfigError("Configuration file must contain the 'backup' key.")
    return BackupConfig.from_dict(data["backup"])


def save_config(config: BackupConfig, path: Path = Path(CONFIG_FILENAME)) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(
            {"backup": config.to_dict()},
            fh,
            allow_unicode=True,
            sort_keys=False,
            default_flow_style=False,
        )


__all__ = [
    "BackupConfig",
    "ConfigError",
    "RemoteConfig",
    "RepositoryConfig",
    "load_config",
    "save_config",
]
