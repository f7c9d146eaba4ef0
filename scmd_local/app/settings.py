from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os
import sys

from scmd_local.config.local_models import DEFAULT_MODEL
from scmd_local.config.paths_config import DataPaths

DEFAULT_PORT = 8089
DEFAULT_HOST = "127.0.0.1"


def _flag(env: Mapping[str, str], name: str) -> bool:
    return bool(env.get(name, ""))


@dataclass(frozen=True, slots=True)
class BackendSettings:
    paths: DataPaths
    debug: bool
    cpu_only: bool
    no_autostart: bool
    quiet: bool
    test_mode: bool
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    model_name: str = DEFAULT_MODEL
    health_timeout_s: float = 30.0
    stop_grace_s: float = 5.0
    request_timeout_s: float = 120.0
    cpu_request_timeout_s: float = 600.0

    @property
    def allow_download(self) -> bool:
        return not self.test_mode

    def validate(self) -> None:
        self.paths.validate()
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("BackendSettings.host must be a non-empty string.")
        if not isinstance(self.port, int) or not (0 < self.port < 65536):
            raise ValueError("BackendSettings.port must be a valid TCP port.")
        if not isinstance(self.model_name, str) or not self.model_name.strip():
            raise ValueError("BackendSettings.model_name must be a non-empty string.")
        for label in ("health_timeout_s", "stop_grace_s", "request_timeout_s", "cpu_request_timeout_s"):
            val = getattr(self, label)
            if not isinstance(val, (int, float)) or val <= 0:
                raise ValueError(f"BackendSettings.{label} must be a positive number.")

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None, **overrides) -> "BackendSettings":
        """
        Build settings from SCMD_* environment variables.

        Any non-empty value turns a flag on. Keyword overrides win over the
        environment (used by the CLI and tests).
        """
        env = os.environ if environ is None else environ
        values = dict(
            paths=DataPaths.from_env(dict(env)),
            debug=_flag(env, "SCMD_DEBUG"),
            cpu_only=_flag(env, "SCMD_CPU_ONLY"),
            no_autostart=_flag(env, "SCMD_NO_AUTOSTART"),
            quiet=_flag(env, "SCMD_QUIET"),
            test_mode=_flag(env, "SCMD_TEST_MODE"),
        )
        values.update(overrides)
        cfg = BackendSettings(**values)
        cfg.validate()
        return cfg


def configure_logging(settings: BackendSettings) -> None:
    """Verbose tracing to stderr under SCMD_DEBUG, warnings only otherwise."""
    level = logging.DEBUG if settings.debug else logging.WARNING
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("scmd_local").setLevel(level)
