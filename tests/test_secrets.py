"""Tests for the encrypted secret store."""

import stat

import pytest

from dsvm_backup.backup import resolve_credentials
from dsvm_backup.errors import AuthError
from dsvm_backup.models import BackupMethod
from dsvm_backup.secrets import SecretError, SecretManager, SecretNotFoundError


@pytest.fixture
def manager(tmp_path):
    manager = SecretManager(tmp_path / "secrets" / "key.key", tmp_path / "secrets" / "secrets.json")
    manager.generate_key()
    return manager


def test_key_is_private(manager):
    assert stat.S_IMODE(manager.key_path.stat().st_mode) == 0o600


def test_key_is_never_overwritten(manager):
    key = manager.key_path.read_bytes()
    with pytest.raises(SecretError):
        manager.generate_key()
    assert manager.key_path.read_bytes() == key


def test_values_are_encrypted_at_rest(manager):
    manager.set_secret("restic-password", "correct horse")

    assert manager.get_secret("restic-password") == "correct horse"
    assert b"correct horse" not in manager.secrets_path.read_bytes()
    assert list(manager.list_secrets()) == ["restic-password"]


def test_unknown_secret(manager):
    with pytest.raises(SecretNotFoundError):
        manager.get_secret("nope")


def test_wrong_key_cannot_decrypt(manager, tmp_path):
    manager.set_secret("token", "value")
    other = SecretManager(tmp_path / "other.key", manager.secrets_path)
    other.generate_key()

    with pytest.raises(SecretError, match="does not match"):
        other.get_secret("token")


def test_missing_key(tmp_path):
    manager = SecretManager(tmp_path / "key.key", tmp_path / "secrets.json")
    with pytest.raises(SecretError, match="init-key"):
        manager.set_secret("token", "value")


def test_credentials_resolve_to_environment(manager, make_config, tmp_path):
    manager.set_secret("restic-password", "pw")
    config = make_config(
        method=BackupMethod.REPOSITORY,
        destination=str(tmp_path / "repo"),
        credentials={"RESTIC_PASSWORD": "restic-password"},
    )

    assert resolve_credentials(config, manager) == {"RESTIC_PASSWORD": "pw"}


def test_unresolvable_credentials_are_auth_errors(manager, make_config, tmp_path):
    config = make_config(
        method=BackupMethod.REPOSITORY,
        destination=str(tmp_path / "repo"),
        credentials={"RESTIC_PASSWORD": "absent"},
    )

    with pytest.raises(AuthError):
        resolve_credentials(config, manager)
    with pytest.raises(AuthError):
        resolve_credentials(config, None)
