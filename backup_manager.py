"""Command line interface for the VM backup tool."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from getpass import getpass
from pathlib import Path
from typing import Iterable, NoReturn, Optional

from dsvm_backup.backup import BackupDispatcher, create_dispatcher
from dsvm_backup.config import BackupConfig, ConfigError, load_config, save_config
from dsvm_backup.configurator import InteractiveConfigurator
from dsvm_backup.errors import (
    AuthError,
    BackupError,
    CorruptionError,
    LockError,
    NotFoundError,
)
from dsvm_backup.models import RecordStatus, RestoreRequest, RestoreState
from dsvm_backup.scheduler import BackupScheduler, crontab_line
from dsvm_backup.secrets import SecretError, SecretManager
from dsvm_backup.utils import format_size

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_PARTIAL = 3
EXIT_NOT_FOUND = 4
EXIT_AUTH = 5
EXIT_CORRUPT = 6
EXIT_LOCKED = 7

LOGGER = logging.getLogger("backup_manager")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backup",
        description="Back up and restore the data-science VM.",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to the configuration file.")
    parser.add_argument("--key", help="Secret encryption key (default: secrets/key.key next to the config).")
    parser.add_argument(
        "--secrets", help="Encrypted secrets file (default: secrets/secrets.json next to the config)."
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity.")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-key", help="Create a new secret encryption key.")

    parser_secret = subparsers.add_parser("set-secret", help="Store a secret value.")
    parser_secret.add_argument("name", help="Secret name.")
    parser_secret.add_argument("--value", help="Secret value (prompted for when omitted).")
    parser_secret.add_argument("--stdin", action="store_true", help="Read the value from STDIN.")

    subparsers.add_parser("list-secrets", help="List stored secret names.")
    subparsers.add_parser("configure", help="Write the configuration file interactively.")

    subparsers.add_parser("run", help="Run a backup now.")
    subparsers.add_parser("trigger", help="Run a backup unless one is already running (for cron).")

    parser_restore = subparsers.add_parser("restore", help="Restore files from a backup.")
    parser_restore.add_argument("identifier", help="Backup identifier (see 'list').")
    parser_restore.add_argument("paths", nargs="*", help="Only restore these paths.")
    parser_restore.add_argument(
        "--force", action="store_true", help="Overwrite files that differ from the backup."
    )
    parser_restore.add_argument("--target-root", help="Restore below this directory instead of '/'.")

    subparsers.add_parser("list", help="List backups, newest first.")

    parser_verify = subparsers.add_parser("verify", help="Check the integrity of a backup.")
    parser_verify.add_argument("identifier", help="Backup identifier.")

    subparsers.add_parser("schedule", help="Stay in the foreground and run backups on schedule.")

    parser_cron = subparsers.add_parser("crontab", help="Print a crontab line for this configuration.")
    parser_cron.add_argument("--executable", default="backup", help="Command cron should invoke.")

    return parser


def configure_logging(level: int, log_file: Optional[str] = None) -> None:
    if level >= 2:
        log_level = logging.DEBUG
    elif level == 1:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=log_level, format=fmt)
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter(fmt))
        root = logging.getLogger()
        root.addHandler(handler)
        if root.level > logging.INFO:
            root.setLevel(logging.INFO)
            for existing in root.handlers:
                if existing is not handler:
                    existing.setLevel(log_level)


def exit_code_for(exc: Exception) -> int:
    if isinstance(exc, ConfigError):
        return EXIT_CONFIG
    if isinstance(exc, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(exc, (AuthError, SecretError)):
        return EXIT_AUTH
    if isinstance(exc, CorruptionError):
        return EXIT_CORRUPT
    if isinstance(exc, LockError):
        return EXIT_LOCKED
    return EXIT_FAILED


def fail(message: str, code: int = EXIT_FAILED) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(code)


def create_secret_manager(args: argparse.Namespace) -> SecretManager:
    base = Path(args.config).expanduser().parent / "secrets"
    key_path = Path(args.key) if args.key else base / "key.key"
    secrets_path = Path(args.secrets) if args.secrets else base / "secrets.json"
    return SecretManager(key_path=key_path, secrets_path=secrets_path)


def load_application_config(path: Path) -> BackupConfig:
    try:
        return load_config(path)
    except ConfigError as exc:
        fail(f"Cannot read configuration: {exc}", EXIT_CONFIG)


# ---------------------------------------------------------------------------
def handle_init_key(secret_manager: SecretManager) -> None:
    try:
        secret_manager.generate_key()
    except SecretError as exc:
        fail(f"Error: {exc}")
    print(f"Created encryption key: {secret_manager.key_path}")


def handle_set_secret(secret_manager: SecretManager, name: str, value: Optional[str], from_stdin: bool) -> None:
    try:
        secret_manager.ensure_key_available()
    except SecretError as exc:
        fail(f"Error: {exc}", EXIT_AUTH)

    if value is None:
        if from_stdin:
            value = sys.stdin.read().rstrip("\n")
        else:
            first = getpass("Secret value: ")
            second = getpass("Repeat: ")
            if first != second:
                fail("Values do not match.")
            value = first

    try:
        secret_manager.set_secret(name, value)
    except SecretError as exc:
        fail(f"Cannot store secret: {exc}", EXIT_AUTH)
    print(f"Secret '{name}' stored in {secret_manager.secrets_path}")


def handle_list_secrets(secret_manager: SecretManager) -> None:
    try:
        names = list(secret_manager.list_secrets())
    except SecretError as exc:
        fail(f"Error: {exc}", EXIT_AUTH)
    if not names:
        print("No secrets stored.")
        return
    print("Stored secrets:")
    for name in names:
        print(f"  - {name}")


def handle_configure(secret_manager: SecretManager, config_path: Path) -> None:
    try:
        secret_manager.ensure_key_available()
    except SecretError:
        secret_manager.generate_key()
        print(f"Created encryption key: {secret_manager.key_path}")
    configurator = InteractiveConfigurator(secret_manager)
    try:
        config = configurator.create_config()
    except KeyboardInterrupt:
        print("\nCancelled.")
        return
    except ConfigError as exc:
        fail(f"Invalid configuration: {exc}", EXIT_CONFIG)
    save_config(config, config_path)
    print(f"Configuration written to {config_path}.")


def handle_run(dispatcher: BackupDispatcher) -> None:
    try:
        record = dispatcher.run()
    except BackupError as exc:
        fail(f"Backup failed: {exc}", exit_code_for(exc))
    print(f"Backup {record.identifier} {record.status.value} ({format_size(record.size_bytes)}).")
    if record.status is RecordStatus.PARTIAL:
        print("Skipped paths:", file=sys.stderr)
        for path in record.skipped_paths:
            print(f"  - {path}", file=sys.stderr)
        sys.exit(EXIT_PARTIAL)


def handle_trigger(dispatcher: BackupDispatcher, config: BackupConfig) -> None:
    scheduler = BackupScheduler(config.schedule, dispatcher.run)
    try:
        record = scheduler.trigger()
    except BackupError as exc:
        fail(f"Backup failed: {exc}", exit_code_for(exc))
    if record is None:
        print("Another backup is running; trigger skipped.")
        return
    print(f"Backup {record.identifier} {record.status.value}.")
    if record.status is RecordStatus.PARTIAL:
        sys.exit(EXIT_PARTIAL)


def handle_restore(dispatcher: BackupDispatcher, args: argparse.Namespace) -> None:
    request = RestoreRequest(
        identifier=args.identifier,
        target_paths=[Path(path) for path in args.paths],
        force=args.force,
        target_root=Path(args.target_root) if args.target_root else None,
    )
    try:
        outcome = dispatcher.restore(request)
    except BackupError as exc:
        fail(f"Restore aborted: {exc}", exit_code_for(exc))

    print(
        f"Restored {len(outcome.applied_paths)} files, {len(outcome.unchanged_paths)} already up to date."
    )
    if outcome.conflicts:
        print("Not overwritten (contents differ, use --force):", file=sys.stderr)
        for path in outcome.conflicts:
            print(f"  - {path}", file=sys.stderr)
    if outcome.missing_paths:
        print("Not present in the backup:", file=sys.stderr)
        for path in outcome.missing_paths:
            print(f"  - {path}", file=sys.stderr)
    if outcome.failed_paths:
        print("Could not be written:", file=sys.stderr)
        for path in outcome.failed_paths:
            print(f"  - {path}", file=sys.stderr)
    if outcome.state is RestoreState.PARTIAL:
        sys.exit(EXIT_PARTIAL)


def handle_list(dispatcher: BackupDispatcher) -> None:
    try:
        records = dispatcher.records()
    except BackupError as exc:
        fail(f"Cannot read backups: {exc}", exit_code_for(exc))
    if not records:
        print("No backups.")
        return
    for record in records:
        print(
            f"{record.identifier:<22} {record.method.value:<10} {record.status.value:<8} "
            f"{format_size(record.size_bytes):>10}  {record.created_at.isoformat(timespec='seconds')}"
        )


def handle_verify(dispatcher: BackupDispatcher, identifier: str) -> None:
    try:
        dispatcher.verify(identifier)
    except BackupError as exc:
        fail(f"Verification failed: {exc}", exit_code_for(exc))
    print(f"Backup {identifier} is intact.")


def handle_schedule(dispatcher: BackupDispatcher, config: BackupConfig) -> None:
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    scheduler = BackupScheduler(config.schedule, dispatcher.run)
    try:
        scheduler.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()


def handle_crontab(config: BackupConfig, config_path: Path, executable: str) -> None:
    print(crontab_line(config, config_path, executable))


# ---------------------------------------------------------------------------
def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    configure_logging(args.verbose)
    secret_manager = create_secret_manager(args)
    config_path = Path(args.config)

    if args.command == "init-key":
        handle_init_key(secret_manager)
        return
    if args.command == "set-secret":
        handle_set_secret(secret_manager, args.name, args.value, args.stdin)
        return
    if args.command == "list-secrets":
        handle_list_secrets(secret_manager)
        return
    if args.command == "configure":
        handle_configure(secret_manager, config_path)
        return

    config = load_application_config(config_path)
    if config.log_file:
        configure_logging(args.verbose, config.log_file)
    if args.command == "crontab":
        handle_crontab(config, config_path, args.executable)
        return

    try:
        dispatcher = create_dispatcher(config, secret_manager=secret_manager)
    except BackupError as exc:
        fail(f"Error: {exc}", exit_code_for(exc))

    if args.command == "run":
        handle_run(dispatcher)
    elif args.command == "trigger":
        handle_trigger(dispatcher, config)
    elif args.command == "restore":
        handle_restore(dispatcher, args)
    elif args.command == "list":
        handle_list(dispatcher)
    elif args.command == "verify":
        handle_verify(dispatcher, args.identifier)
    elif args.command == "schedule":
        handle_schedule(dispatcher, config)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
