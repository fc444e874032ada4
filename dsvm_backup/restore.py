"""Putting files from a backup back where they came from."""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import NotFoundError, StorageError
from .models import RestoreOutcome, RestoreRequest
from .store import RecordStore
from .utils import archive_name_for, ensure_directory, files_identical

LOGGER = logging.getLogger(__name__)


def restore(
    request: RestoreRequest,
    store: RecordStore,
    strategy,
    logger: logging.Logger = LOGGER,
) -> RestoreOutcome:
    """Restore the backup named in *request*.

    Files that are missing at their original location are copied back, files
    with identical contents are left alone, and files whose contents differ
    are reported as conflicts. Conflicting files are only overwritten when
    ``request.force`` is set. A file that cannot be written is listed in
    ``failed_paths`` and the remaining files are still restored.

    Raises :class:`NotFoundError` for an unknown identifier and
    :class:`CorruptionError` when the backup fails verification; nothing on
    disk is touched in either case.
    """

    record = store.get(request.identifier)
    if record is None:
        raise NotFoundError(f"Backup '{request.identifier}' not found.")

    strategy.verify(record)
    outcome = RestoreOutcome(identifier=record.identifier)
    scopes = [archive_name_for(path) for path in request.target_paths]

    with tempfile.TemporaryDirectory(prefix="dsvm_restore_") as tmp_dir:
        staging = Path(tmp_dir) / "tree"
        staging.mkdir()
        try:
            strategy.restore(record, staging)
        except OSError as exc:
            raise StorageError(f"Cannot unpack backup '{record.identifier}': {exc}") from exc

        matched_scopes = set()
        for relative, staged in _staged_files(staging):
            scope = _matching_scope(relative, scopes)
            if scopes and scope is None:
                continue
            matched_scopes.add(scope)
            target = _target_for(relative, request.target_root)
            try:
                _apply(staged, target, request.force, outcome)
            except OSError as exc:
                logger.warning("restore failed id=%s path=%s error=%s", record.identifier, target, exc)
                outcome.failed_paths.append(target)

        for path, scope in zip(request.target_paths, scopes):
            if scope not in matched_scopes:
                outcome.missing_paths.append(Path(path))

    logger.info(
        "restore finished id=%s state=%s applied=%d unchanged=%d conflicts=%d missing=%d failed=%d",
        record.identifier,
        outcome.state.value,
        len(outcome.applied_paths),
        len(outcome.unchanged_paths),
        len(outcome.conflicts),
        len(outcome.missing_paths),
        len(outcome.failed_paths),
    )
    for path in outcome.conflicts:
        logger.warning("restore conflict id=%s path=%s", record.identifier, path)
    return outcome


# ---------------------------------------------------------------------------
def _staged_files(staging: Path) -> Iterator[Tuple[str, Path]]:
    for root, dirs, files in os.walk(staging):
        dirs.sort()
        for name in sorted(files):
            path = Path(root) / name
            yield path.relative_to(staging).as_posix(), path
        for name in dirs:
            path = Path(root) / name
            if path.is_symlink():
                yield path.relative_to(staging).as_posix(), path


def _matching_scope(relative: str, scopes: List[str]) -> Optional[str]:
    for scope in scopes:
        if relative == scope or relative.startswith(scope.rstrip("/") + "/"):
            return scope
    return None


def _target_for(relative: str, target_root: Optional[Path]) -> Path:
    if target_root is not None:
        return Path(target_root).expanduser() / relative
    return Path("/") / relative


def _apply(staged: Path, target: Path, force: bool, outcome: RestoreOutcome) -> None:
    if target.is_symlink() or target.exists():
        if _same(staged, target):
            outcome.unchanged_paths.append(target)
            return
        if not force:
            outcome.conflicts.append(target)
            return
        if target.is_dir() and not target.is_symlink():
            outcome.conflicts.append(target)
            return
        target.unlink()

    ensure_directory(target.parent)
    if staged.is_symlink():
        os.symlink(os.readlink(staged), target)
    else:
        shutil.copy2(staged, target)
    outcome.applied_paths.append(target)


def _same(staged: Path, target: Path) -> bool:
    if staged.is_symlink() or target.is_symlink():
        return staged.is_symlink() and target.is_symlink() and os.readlink(staged) == os.readlink(target)
    if not target.is_file():
        return False
    return files_identical(staged, target)


__all__ = ["restore"]
