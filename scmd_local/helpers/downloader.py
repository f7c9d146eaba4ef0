from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
import errno
import hashlib
import logging
import os
import shutil
import threading
import time

import requests

from scmd_local.helpers.retry import BackoffPolicy, call_with_retry
from scmd_local.helpers.units import format_bytes
from scmd_local.interfaces.errors import (
    DiskSpaceError,
    DownloadCancelled,
    DownloadFailedError,
    IntegrityError,
    PreflightError,
    ScmdBackendError,
    TransferError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "scmd/1.0 (https://github.com/scmd/scmd)"
DISK_SPACE_MARGIN = 1.2  # temp file and final file briefly coexist
HASH_CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, int], None]

DISK_SPACE_HELP = [
    "Free up disk space by removing unused files",
    "Choose a smaller model (e.g., qwen2.5-1.5b instead of qwen2.5-7b)",
    "Delete old models: scmd-local models rm <model-name>",
]


@dataclass(frozen=True, slots=True)
class DownloadConfig:
    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    buffer_size: int = 128 * 1024
    resume_supported: bool = True
    connect_timeout_s: float = 30.0
    read_timeout_s: float = 60.0


@dataclass
class DownloadSession:
    """State for one `download` call."""
    destination_path: Path
    resume_offset: int = 0
    attempts: int = 0

    @property
    def temporary_path(self) -> Path:
        return self.destination_path.with_name(self.destination_path.name + ".tmp")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ScmdBackendError) and exc.retryable


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            h.update(block)
    return h.hexdigest()


class ResilientDownloader:
    """
    Fetch a URL to a file with disk-space preflight, HTTP range resume,
    bounded retries and post-download verification.

    Bytes land in ``<dest>.tmp`` and are moved into place with an atomic
    rename once verified. A failed or cancelled transfer leaves the temp file
    behind so the next call can resume; an integrity failure deletes it.
    """

    def __init__(
        self,
        config: Optional[DownloadConfig] = None,
        *,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        disk_usage: Callable[[str], Any] = shutil.disk_usage,
    ) -> None:
        self.config = config or DownloadConfig()
        self._http = http or requests.Session()
        self._sleep = sleep
        self._disk_usage = disk_usage

    def check_disk_space(self, dest_path: Path, required_bytes: int) -> None:
        directory = dest_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreflightError(
                "disk space check",
                e,
                "Failed to create directory for model download.",
                [
                    "Check if you have write permissions to the directory",
                    f"Ensure {directory} is writable",
                ],
            ) from e

        if required_bytes <= 0:
            return
        try:
            free = self._disk_usage(str(directory)).free
        except OSError as e:
            logger.debug("Could not determine free space for %s: %s", directory, e)
            return

        needed = int(required_bytes * DISK_SPACE_MARGIN)
        if free < needed:
            raise DiskSpaceError(
                required_bytes=needed,
                free_bytes=free,
                message=f"Need {format_bytes(needed)} free, but only {format_bytes(free)} available.",
                help=DISK_SPACE_HELP,
            )

    def download(
        self,
        url: str,
        dest_path: str | Path,
        expected_size: int = 0,
        on_progress: Optional[ProgressCallback] = None,
        *,
        expected_sha256: Optional[str] = None,
        verify_size: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        session = DownloadSession(destination_path=Path(dest_path))
        self.check_disk_space(session.destination_path, expected_size)

        def attempt() -> Path:
            session.attempts += 1
            return self._attempt(
                session, url, expected_size, on_progress,
                expected_sha256=expected_sha256,
                verify_size=verify_size,
                cancel=cancel,
            )

        try:
            return call_with_retry(
                attempt,
                policy=self.config.policy,
                is_retryable=is_retryable,
                sleep=self._cancellable_sleep(cancel),
                label="Download",
            )
        except TransferError as e:
            raise DownloadFailedError(
                attempts=session.attempts,
                cause=e,
                help=[
                    "Check your internet connection",
                    "Try again later (network may be temporarily unavailable)",
                    f"Download manually and place in: {session.destination_path.parent}",
                    "Use a different network or VPN if the server is blocked",
                ],
            ) from e

    def _cancellable_sleep(self, cancel: Optional[threading.Event]) -> Callable[[float], None]:
        if cancel is None:
            return self._sleep

        def _sleep(seconds: float) -> None:
            if cancel.wait(seconds):
                raise DownloadCancelled("download cancelled")
        return _sleep

    def _attempt(
        self,
        session: DownloadSession,
        url: str,
        expected_size: int,
        on_progress: Optional[ProgressCallback],
        *,
        expected_sha256: Optional[str],
        verify_size: bool,
        cancel: Optional[threading.Event],
    ) -> Path:
        if cancel is not None and cancel.is_set():
            raise DownloadCancelled("download cancelled")

        tmp = session.temporary_path
        # A failed attempt may still have written bytes; always re-stat.
        offset = 0
        if self.config.resume_supported and tmp.exists():
            offset = tmp.stat().st_size
        session.resume_offset = offset
        if offset > 0:
            logger.info("Resuming download of %s from %s", url, format_bytes(offset))

        headers = {"User-Agent": USER_AGENT}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        try:
            resp = self._http.get(
                url,
                headers=headers,
                stream=True,
                timeout=(self.config.connect_timeout_s, self.config.read_timeout_s),
            )
        except requests.RequestException as e:
            raise TransferError(f"http request: {e}") from e

        with resp:
            status = resp.status_code
            if offset > 0 and status == 206:
                mode = "ab"
            elif status == 200:
                if offset > 0:
                    logger.info("Server ignored the range request; restarting %s from zero", url)
                    offset = 0
                    session.resume_offset = 0
                mode = "wb"
            elif offset > 0 and status == 416:
                if offset in (self._range_total(resp), expected_size if verify_size else -1):
                    return self._finish(session, expected_size, expected_sha256, verify_size, True)
                tmp.unlink(missing_ok=True)
                raise TransferError("resume not supported (HTTP 416), restarting download")
            else:
                raise TransferError(f"HTTP {status} from {url}")

            server_total = self._total_size(resp, offset, status)
            total = server_total or expected_size
            current = self._copy_body(resp, tmp, mode, offset, total, on_progress, cancel)

        if server_total > 0 and current < server_total:
            raise TransferError(f"incomplete transfer: expected {server_total} bytes, got {current} bytes")
        body_complete = server_total > 0 and current == server_total
        return self._finish(session, expected_size, expected_sha256, verify_size, body_complete)

    @staticmethod
    def _range_total(resp: requests.Response) -> int:
        """Size from a ``Content-Range: bytes */N`` header, or -1."""
        value = resp.headers.get("Content-Range", "")
        _, _, total = value.rpartition("/")
        return int(total) if total.isdigit() else -1

    @staticmethod
    def _total_size(resp: requests.Response, offset: int, status: int) -> int:
        """Full file size announced by the server, or 0 when unknown."""
        try:
            total = int(resp.headers.get("Content-Length", "0"))
        except ValueError:
            total = 0
        if total > 0 and status == 206:
            total += offset
        return max(total, 0)

    def _copy_body(
        self,
        resp: requests.Response,
        tmp: Path,
        mode: str,
        offset: int,
        total: int,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event],
    ) -> int:
        current = offset
        with tmp.open(mode) as out:
            if on_progress is not None:
                on_progress(current, total)
            chunks = resp.iter_content(chunk_size=self.config.buffer_size)
            while True:
                if cancel is not None and cancel.is_set():
                    raise DownloadCancelled("download cancelled")
                try:
                    chunk = next(chunks, None)
                except requests.RequestException as e:
                    raise TransferError(f"read response: {e}") from e
                if chunk is None:
                    break
                if not chunk:
                    continue
                try:
                    out.write(chunk)
                except OSError as e:
                    if e.errno == errno.ENOSPC:
                        raise DiskSpaceError(
                            required_bytes=total,
                            free_bytes=0,
                            message="The disk filled up while downloading.",
                            help=DISK_SPACE_HELP,
                        ) from e
                    raise TransferError(f"write to file: {e}") from e
                current += len(chunk)
                if on_progress is not None:
                    on_progress(current, total)
        return current

    def _finish(
        self,
        session: DownloadSession,
        expected_size: int,
        expected_sha256: Optional[str],
        verify_size: bool,
        body_complete: bool,
    ) -> Path:
        tmp = session.temporary_path
        size = tmp.stat().st_size

        if verify_size and expected_size > 0 and size != expected_size:
            if size < expected_size and not body_complete:
                raise TransferError(
                    f"incomplete transfer: expected {expected_size} bytes, got {size} bytes"
                )
            tmp.unlink(missing_ok=True)
            raise IntegrityError(
                "verification",
                f"size mismatch: expected {expected_size} bytes, got {size} bytes",
                "The downloaded file is corrupted and has been removed.",
                ["Try the download again; the corruption is usually transient"],
            )

        if expected_sha256:
            got = sha256_file(tmp)
            if got.lower() != expected_sha256.lower():
                tmp.unlink(missing_ok=True)
                raise IntegrityError(
                    "verification",
                    f"checksum mismatch: expected {expected_sha256}, got {got}",
                    "The downloaded file is corrupted and has been removed.",
                    ["Try the download again; the corruption is usually transient"],
                )

        os.replace(tmp, session.destination_path)
        logger.info("Downloaded %s (%s)", session.destination_path, format_bytes(size))
        return session.destination_path
