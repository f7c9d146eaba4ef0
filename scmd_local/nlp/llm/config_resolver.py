from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional, TYPE_CHECKING
import logging
import os

from scmd_local.app.hardware import DEFAULT_NATIVE_CONTEXT, ResourceProfiler

if TYPE_CHECKING:
    from scmd_local.app.settings import BackendSettings

logger = logging.getLogger(__name__)

ASSUMED_MODEL_SIZE = 2 * 1024 ** 3  # when the file can't be stat'ed
FALLBACK_CONTEXT = 131072           # llama-server caps this at the model's maximum


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Launch parameters for llama-server. ``None`` means "let the profiler decide"."""
    model_path: Path
    port: int = 8089
    host: str = "127.0.0.1"
    context_size: Optional[int] = None
    gpu_layers: Optional[int] = None
    cpu_only: bool = False
    threads: Optional[int] = None
    native_context: int = DEFAULT_NATIVE_CONTEXT


def _apply_overrides(values: dict[str, Any], overrides: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    if not overrides:
        return values
    unknown = sorted(set(overrides.keys()) - set(values.keys()))
    if unknown:
        raise ValueError(f"Unknown override keys: {', '.join(unknown)}")
    for key, val in overrides.items():
        values[key] = val
    return values


def resolve_server_config(
    settings: "BackendSettings",
    model_path: str | Path,
    *,
    server_overrides: Optional[Mapping[str, Any]] = None,
) -> ServerConfig:
    values: dict[str, Any] = {
        "model_path": Path(model_path).expanduser().resolve(),
        "port": settings.port,
        "host": settings.host,
        "context_size": None,
        "gpu_layers": None,
        "cpu_only": settings.cpu_only,
        "threads": None,
        "native_context": DEFAULT_NATIVE_CONTEXT,
    }
    values = _apply_overrides(values, server_overrides)

    if not isinstance(values["model_path"], Path):
        values["model_path"] = Path(values["model_path"]).expanduser().resolve()
    if values["context_size"] is not None and values["context_size"] <= 0:
        values["context_size"] = None

    cfg = ServerConfig(**values)
    logger.debug("Resolved ServerConfig: %s", cfg)
    return cfg


def fill_launch_defaults(cfg: ServerConfig, profiler: ResourceProfiler) -> ServerConfig:
    """
    Fill every unset field of `cfg`. Fields the caller set are kept as is;
    CPU-only mode always forces zero GPU layers.
    """
    context_size = cfg.context_size
    gpu_layers = cfg.gpu_layers

    if context_size is None or gpu_layers is None:
        try:
            model_size = cfg.model_path.stat().st_size
        except OSError:
            model_size = ASSUMED_MODEL_SIZE
        rec = profiler.safe_recommend(model_size, cfg.native_context)
        if context_size is None:
            context_size = rec.context_size
        if gpu_layers is None:
            gpu_layers = rec.gpu_layers
        logger.debug("Auto-tuned config: context=%d, gpu_layers=%d", context_size, gpu_layers)

    if not context_size:
        context_size = FALLBACK_CONTEXT
    if cfg.cpu_only:
        gpu_layers = 0

    return replace(
        cfg,
        context_size=context_size,
        gpu_layers=gpu_layers,
        threads=cfg.threads or os.cpu_count() or 1,
    )
