from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging
import os

import psutil
import torch

from scmd_local.interfaces.errors import HardwareDetectionError

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
OS_RESERVE_BYTES = 2 * GIB
MIN_CONTEXT = 2048
DEFAULT_NATIVE_CONTEXT = 32768
FULL_GPU_LAYERS = 99  # llama-server clamps to the model's layer count
MIN_KV_BYTES_PER_TOKEN = 32 * 1024


@dataclass(frozen=True, slots=True)
class HardwareInfo:
    cpu_count: int
    total_ram_bytes: int
    has_gpu: bool
    gpu_kind: Optional[str]          # "cuda" | "metal" | None
    gpu_memory_bytes: Optional[int] = None

    @property
    def summary(self) -> str:
        gpu = self.gpu_kind or "no GPU"
        if self.gpu_memory_bytes is not None:
            gpu += f" ({self.gpu_memory_bytes / GIB:.1f} GB VRAM)"
        return f"RAM: {self.total_ram_bytes / GIB:.1f} GB | CPU: {self.cpu_count} | {gpu}"


@dataclass(frozen=True, slots=True)
class LaunchRecommendation:
    context_size: int
    gpu_layers: int


# Used when detection fails: CPU-only, moderate context.
CONSERVATIVE_RECOMMENDATION = LaunchRecommendation(context_size=4096, gpu_layers=0)


def get_hardware_info() -> HardwareInfo:
    """Collect CPU, RAM and GPU facts used to tune llama-server."""
    try:
        total_ram = int(psutil.virtual_memory().total)
    except (OSError, RuntimeError, psutil.Error) as e:
        raise HardwareDetectionError(f"could not read system memory: {e}") from e
    cpu_count = os.cpu_count() or 1

    gpu_kind = None
    gpu_mem = None
    try:
        if torch.cuda.is_available():
            gpu_kind = "cuda"
            gpu_mem = int(torch.cuda.get_device_properties(0).total_memory)
        elif getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
            gpu_kind = "metal"
    except (RuntimeError, AssertionError) as e:
        # A broken driver is treated as "no GPU", not as a failed detection.
        logger.debug("GPU probe failed: %s", e)

    return HardwareInfo(
        cpu_count=cpu_count,
        total_ram_bytes=total_ram,
        has_gpu=gpu_kind is not None,
        gpu_kind=gpu_kind,
        gpu_memory_bytes=gpu_mem,
    )


def _floor_pow2(n: int) -> int:
    return 1 << (n.bit_length() - 1) if n > 0 else 0


def recommend_launch(
    hw: HardwareInfo,
    model_size_bytes: int,
    native_context: int = DEFAULT_NATIVE_CONTEXT,
) -> LaunchRecommendation:
    """
    Pick a context window and GPU offload for a model of the given size.

    Half of the RAM left after loading the model (and keeping a reserve for
    the OS) is budgeted for the KV cache. The KV cost per token is taken to
    scale with model size. The result is a power of two in
    ``[MIN_CONTEXT, native_context]``.
    """
    gpu_layers = FULL_GPU_LAYERS if hw.has_gpu else 0

    ceiling = max(native_context, MIN_CONTEXT)
    headroom = hw.total_ram_bytes - model_size_bytes - OS_RESERVE_BYTES
    if headroom <= 0:
        return LaunchRecommendation(context_size=MIN_CONTEXT, gpu_layers=gpu_layers)

    kv_per_token = max(MIN_KV_BYTES_PER_TOKEN, model_size_bytes // 16384)
    affordable = _floor_pow2((headroom // 2) // kv_per_token)
    context = min(max(affordable, MIN_CONTEXT), ceiling)
    return LaunchRecommendation(context_size=context, gpu_layers=gpu_layers)


class ResourceProfiler:
    """Thin object wrapper so the supervisor can be handed a fake in tests."""

    def detect(self) -> HardwareInfo:
        return get_hardware_info()

    def recommend(
        self,
        hw: HardwareInfo,
        model_size_bytes: int,
        native_context: int = DEFAULT_NATIVE_CONTEXT,
    ) -> LaunchRecommendation:
        return recommend_launch(hw, model_size_bytes, native_context)

    def safe_recommend(
        self,
        model_size_bytes: int,
        native_context: int = DEFAULT_NATIVE_CONTEXT,
    ) -> LaunchRecommendation:
        """`detect` + `recommend`, falling back to conservative defaults."""
        try:
            hw = self.detect()
        except HardwareDetectionError as e:
            logger.debug("Could not detect system resources: %s", e)
            return CONSERVATIVE_RECOMMENDATION
        logger.debug("Detected hardware: %s", hw.summary)
        return self.recommend(hw, model_size_bytes, native_context)
