from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
import os

DEFAULT_DATA_DIR = "~/.scmd"
SERVER_LOG_NAME = "llama-server.log"
PID_FILE_NAME = "llama-server.pid"


@dataclass(frozen=True, slots=True)
class DataPaths:
    """
    File system locations used by the local backend.

    Everything lives under one data directory:

        <data_dir>/models/<name>-<variant>.gguf
        <data_dir>/logs/llama-server.log
        <data_dir>/llama-server.pid
        <data_dir>/bin/llama-server

    Paths are normalized (expanded + resolved). Directories can be created
    with `ensure_dirs()`.
    """
    data_dir: Path

    @property
    def models_dir(self) -> Path:
        return self.data_dir / "models"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def bin_dir(self) -> Path:
        return self.data_dir / "bin"

    @property
    def server_log(self) -> Path:
        return self.logs_dir / SERVER_LOG_NAME

    @property
    def pid_file(self) -> Path:
        return self.data_dir / PID_FILE_NAME

    @staticmethod
    def from_strings(data_dir: str | Path) -> "DataPaths":
        """
        Convenience constructor for CLI/env usage.
        """
        return DataPaths(data_dir=DataPaths._norm(data_dir))

    @staticmethod
    def from_env(environ: dict[str, str] | None = None) -> "DataPaths":
        env = os.environ if environ is None else environ
        return DataPaths.from_strings(env.get("SCMD_DATA_DIR") or DEFAULT_DATA_DIR)

    def ensure_dirs(self) -> None:
        """
        Create the models and logs directories if they don't exist.
        """
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        """
        Raises ValueError if the data directory exists but is not a directory.
        """
        for p, label in [
            (self.data_dir, "data_dir"),
            (self.models_dir, "models_dir"),
            (self.logs_dir, "logs_dir"),
        ]:
            if p.exists() and not p.is_dir():
                raise ValueError(f"{label} exists but is not a directory: {p}")

    @staticmethod
    def _norm(p: str | Path) -> Path:
        """
        Normalize a path: expand ~ and resolve to an absolute path.
        """
        return Path(p).expanduser().resolve()
