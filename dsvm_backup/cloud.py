"""Transports used by the remote-sync strategy to reach object storage."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

import requests

from .config import RemoteConfig
from .errors import AuthError, TransferError
from .executor import CommandExecutor, ExitStatus

LOGGER = logging.getLogger(__name__)


@dataclass
class RcloneTransport:
    """Copy snapshot files with the rclone binary; exit codes are surfaced as-is."""

    destination: str
    settings: RemoteConfig
    executor: CommandExecutor
    env: Dict[str, str] = field(default_factory=dict)

    def ensure_remote(self) -> None:
        self._check(self._run("mkdir", self.destination), "mkdir")

    def upload(self, file_path: Path) -> None:
        self._check(self._run("copyto", str(file_path), self._remote(file_path.name)), "copyto")
        LOGGER.info("Uploaded %s to %s", file_path, self._remote(file_path.name))

    def download(self, name: str, file_path: Path) -> None:
        self._check(self._run("copyto", self._remote(name), str(file_path)), "copyto")

    def delete(self, name: str) -> None:
        self._check(self._run("deletefile", self._remote(name)), "deletefile")

    def remote_size(self, name: str) -> Optional[int]:
        status = self._run("lsjson", self._remote(name))
        if not status.ok:
            return None
        try:
            entries = json.loads(status.stdout or "[]")
        except ValueError as exc:
            raise TransferError(f"Unexpected output from rclone lsjson: {exc}") from exc
        if not entries:
            return None
        return int(entries[0].get("Size", -1))

    # ------------------------------------------------------------------
    def _remote(self, name: str) -> str:
        return f"{self.destination.rstrip('/')}/{name}"

    def _run(self, *args: str) -> ExitStatus:
        command = [self.settings.binary, *self.settings.extra_args, *args]
        return self.executor.execute(command, env=self.env, timeout=self.settings.timeout)

    def _check(self, status: ExitStatus, action: str) -> None:
        if not status.ok:
            raise TransferError(
                f"rclone {action} failed with code {status.returncode}: {status.stderr.strip()}",
                status.returncode,
            )


@dataclass
class WebDAVTransport:
    """Plain WebDAV over HTTP(S): MKCOL, PUT, GET, HEAD and DELETE."""

    url: str
    token: Optional[str] = None
    login: Optional[str] = None
    password: Optional[str] = None
    timeout: Optional[int] = None
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self) -> None:
        parts = urlsplit(self.url)
        self.base_url = f"{parts.scheme}://{parts.netloc}"
        self.remote_directory = normalize_remote_directory(parts.path)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"OAuth {self.token}"
        return headers

    def _auth(self) -> Optional[Tuple[str, str]]:
        if self.login and self.password and not self.token:
            return (self.login, self.password)
        return None

    def ensure_remote(self) -> None:
        if self.remote_directory == "/":
            return
        segments = [segment for segment in self.remote_directory.strip("/").split("/") if segment]
        current = ""
        for segment in segments:
            current = current + "/" + segment
            response = self._request("MKCOL", current)
            if response.status_code in {200, 201, 301, 405}:
                continue
            self._raise_for_response(response, f"create folder '{current}'")

    def upload(self, file_path: Path) -> None:
        file_path = Path(file_path)
        target = join_remote(self.remote_directory, file_path.name)
        with file_path.open("rb") as fh:
            response = self._request("PUT", target, data=fh)
        if response.status_code not in {200, 201, 202, 204}:
            self._raise_for_response(response, f"upload '{file_path.name}'")
        LOGGER.info("Uploaded %s to %s%s", file_path, self.base_url, target)

    def download(self, name: str, file_path: Path) -> None:
        response = self._request("GET", join_remote(self.remote_directory, name), stream=True)
        if response.status_code != 200:
            self._raise_for_response(response, f"download '{name}'")
        with Path(file_path).open("wb") as fh:
            for chunk in response.iter_content(chunk_size=65536):
                fh.write(chunk)

    def delete(self, name: str) -> None:
        response = self._request("DELETE", join_remote(self.remote_directory, name))
        if response.status_code not in {200, 202, 204, 404}:
            self._raise_for_response(response, f"delete '{name}'")

    def remote_size(self, name: str) -> Optional[int]:
        response = self._request("HEAD", join_remote(self.remote_directory, name))
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for_response(response, f"inspect '{name}'")
        length = response.headers.get("Content-Length")
        return int(length) if length is not None else None

    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(
                method,
                self.base_url + path,
                headers=self._headers(),
                auth=self._auth(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise TransferError(f"WebDAV {method} {path} failed: {exc}") from exc

    def _raise_for_response(self, response: requests.Response, action: str) -> None:
        if response.status_code in {401, 403}:
            raise AuthError(f"WebDAV server refused to {action}: HTTP {response.status_code}")
        raise TransferError(
            f"WebDAV server failed to {action}: HTTP {response.status_code} {response.text}",
            response.status_code,
        )


def normalize_remote_directory(path: str) -> str:
    path = path.strip()
    if path in {"", "/"}:
        return "/"
    return "/" + path.strip("/")


def join_remote(directory: str, filename: str) -> str:
    directory = normalize_remote_directory(directory)
    if directory == "/":
        return f"/{filename}"
    return f"{directory}/{filename}"


__all__ = ["RcloneTransport", "WebDAVTransport", "join_remote", "normalize_remote_directory"]
