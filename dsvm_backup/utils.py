"""Helper utilities for the VM backup tool."""
from __future__ import annotations

import filecmp
import hashlib
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional


def slugify(value: str, fallback: str = "backup") -> str:
    """Return a filesystem-friendly version of *value*.

    Letters, numbers and underscores are kept, every other run of characters
    becomes a single underscore.
    """

    value = value.strip()
    sanitized = re.sub(r"[^0-9A-Za-z_]+", "_", value)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    return sanitized or fallback


def ensure_directory(path: Path) -> Path:
    """Create *path* if it does not exist and return it."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_for_filename(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now()
    return dt.strftime("%Y%m%dT%H%M%S")


def mask_sensitive(value: str, secrets: Iterable[str]) -> str:
    """Replace occurrences of secret values in *value* with '***'."""

    masked = value
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, "***")
    return masked


def compute_checksum(file_path: Path) -> str:
    """Return the SHA-256 of *file_path* as ``sha256:<hex>``."""

    sha256 = hashlib.sha256()
    with open(file_path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            sha256.update(chunk)
    return f"sha256:{sha256.hexdigest()}"


def files_identical(left: Path, right: Path) -> bool:
    return filecmp.cmp(left, right, shallow=False)


def archive_name_for(path: Path) -> str:
    """Name under which an absolute *path* is stored inside a snapshot."""

    return Path(os.path.abspath(path)).as_posix().lstrip("/")


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"  # pragma: no cover


__all__ = [
    "archive_name_for",
    "compute_checksum",
    "ensure_directory",
    "files_identical",
    "format_size",
    "mask_sensitive",
    "slugify",
    "timestamp_for_filename",
]
