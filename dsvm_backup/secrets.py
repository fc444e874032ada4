"""Encrypted storage for credentials referenced from the configuration."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable

from cryptography.fernet import Fernet, InvalidToken


class SecretError(Exception):
    """Raised when the secret store cannot be read or written."""


class SecretNotFoundError(SecretError):
    """Raised when a requested secret is not stored."""


@dataclass
class SecretManager:
    key_path: Path
    secrets_path: Path

    def generate_key(self) -> None:
        if self.key_path.exists():
            raise SecretError(f"Key file '{self.key_path}' already exists.")
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(Fernet.generate_key())
        os.chmod(self.key_path, 0o600)

    def ensure_key_available(self) -> None:
        if not self.key_path.exists():
            raise SecretError(
                f"Key file '{self.key_path}' not found. Create it with 'backup init-key'."
            )

    def set_secret(self, name: str, value: str) -> None:
        if not name:
            raise SecretError("Secret name must not be empty.")
        secrets = self._load()
        secrets[name] = value
        self._save(secrets)

    def get_secret(self, name: str) -> str:
        secrets = self._load()
        if name not in secrets:
            raise SecretNotFoundError(f"Secret '{name}' is not stored.")
        return secrets[name]

    def list_secrets(self) -> Iterable[str]:
        return sorted(self._load())

    # ------------------------------------------------------------------
    def _fernet(self) -> Fernet:
        self.ensure_key_available()
        try:
            return Fernet(self.key_path.read_bytes().strip())
        except ValueError as exc:
            raise SecretError(f"Key file '{self.key_path}' is damaged: {exc}") from exc

    def _load(self) -> Dict[str, str]:
        if not self.secrets_path.exists():
            return {}
        token = self.secrets_path.read_bytes()
        try:
            payload = self._fernet().decrypt(token)
        except InvalidToken as exc:
            raise SecretError(
                f"Cannot decrypt '{self.secrets_path}': the key does not match."
            ) from exc
        return json.loads(payload.decode("utf-8"))

    def _save(self, secrets: Dict[str, str]) -> None:
        payload = json.dumps(secrets, ensure_ascii=False, sort_keys=True).encode("utf-8")
        self.secrets_path.parent.mkdir(parents=True, exist_ok=True)
        self.secrets_path.write_bytes(self._fernet().encrypt(payload))
        os.chmod(self.secrets_path, 0o600)


__all__ = ["SecretError", "SecretManager", "SecretNotFoundError"]
