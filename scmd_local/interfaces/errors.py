from __future__ import annotations

from typing import Optional, Sequence


class ScmdBackendError(Exception):
    """Base class for every error raised by the local backend."""

    retryable: bool = False


class StagedError(ScmdBackendError):
    """
    Error tagged with the stage that failed and what the user can do about it.

    Rendered as::

        <stage>: <cause>

        <message>

        What to try:
          1. ...
    """

    def __init__(
        self,
        stage: str,
        cause: object,
        message: str = "",
        help: Optional[Sequence[str]] = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.message = message
        self.help = list(help or [])
        super().__init__(self._render())

    def _render(self) -> str:
        text = f"{self.stage}: {self.cause}"
        if self.message:
            text += f"\n\n{self.message}"
        if self.help:
            text += "\n\nWhat to try:\n"
            text += "".join(f"  {i}. {h}\n" for i, h in enumerate(self.help, start=1))
        return text


# ---------- download ----------

class PreflightError(StagedError):
    pass


class DiskSpaceError(PreflightError):
    def __init__(self, required_bytes: int, free_bytes: int, message: str, help: Sequence[str]) -> None:
        self.required_bytes = required_bytes
        self.free_bytes = free_bytes
        super().__init__("disk space check", "insufficient disk space", message, help)


class TransferError(ScmdBackendError):
    """Connection, read or HTTP status failure while fetching bytes."""

    retryable = True


class DownloadFailedError(StagedError, TransferError):
    """Every attempt in the retry budget failed with a transfer error."""

    retryable = True

    def __init__(self, attempts: int, cause: BaseException, help: Sequence[str]) -> None:
        self.attempts = attempts
        super().__init__("download", cause, f"Failed after {attempts} attempts.", help)


class IntegrityError(StagedError):
    pass


class DownloadCancelled(ScmdBackendError):
    pass


# ---------- catalog ----------

class UnknownModelError(ScmdBackendError, LookupError):
    pass


class ModelNotCachedError(ScmdBackendError):
    pass


# ---------- hardware ----------

class HardwareDetectionError(ScmdBackendError):
    pass


# ---------- server ----------

class BinaryNotFoundError(StagedError):
    pass


class ServerStartError(StagedError):
    pass


class LaunchTimeoutError(ServerStartError):
    pass


class ServerStartCancelled(ScmdBackendError):
    pass


# ---------- inference ----------

class InferenceError(ScmdBackendError):
    pass


class InferenceHTTPError(InferenceError):
    """The server was unreachable, answered non-200, or sent an unreadable body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class InferenceServerError(InferenceHTTPError):
    """200 OK with no content but an embedded ``error`` field."""


class InferenceEmptyError(InferenceError):
    """The model produced no text."""


class BackendNotInitializedError(ScmdBackendError):
    pass
