from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from huggingface_hub import hf_hub_url

GGUF_EXT = ".gguf"
DEFAULT_MODEL = "qwen3-4b"


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    variant: str
    hf_repo_id: str
    hf_filename: str
    expected_size_bytes: int          # 0 = unknown until the first byte arrives
    native_context_length: int
    supports_tool_calling: bool
    description: str
    expected_sha256: Optional[str] = None
    size_is_exact: bool = False       # catalog sizes are approximate unless set
    url: Optional[str] = None         # overrides the Hugging Face location
    hf_revision: str = "main"

    @property
    def source_url(self) -> str:
        if self.url:
            return self.url
        return hf_hub_url(repo_id=self.hf_repo_id, filename=self.hf_filename, revision=self.hf_revision)

    @property
    def local_filename(self) -> str:
        return f"{self.name}-{self.variant}{GGUF_EXT}"


MODEL_SPECS: list[ModelDescriptor] = [
    ModelDescriptor(
        name="qwen2.5-3b",
        variant="q4_k_m",
        hf_repo_id="Qwen/Qwen2.5-3B-Instruct-GGUF",
        hf_filename="qwen2.5-3b-instruct-q4_k_m.gguf",
        expected_size_bytes=2_020_000_000,
        native_context_length=32768,
        supports_tool_calling=True,
        description="Qwen2.5 3B - Good balance of speed and quality",
    ),
    ModelDescriptor(
        name="qwen2.5-1.5b",
        variant="q4_k_m",
        hf_repo_id="Qwen/Qwen2.5-1.5B-Instruct-GGUF",
        hf_filename="qwen2.5-1.5b-instruct-q4_k_m.gguf",
        expected_size_bytes=986_000_000,
        native_context_length=32768,
        supports_tool_calling=True,
        description="Qwen2.5 1.5B - Fast and lightweight",
    ),
    ModelDescriptor(
        name="qwen2.5-0.5b",
        variant="q4_k_m",
        hf_repo_id="Qwen/Qwen2.5-0.5B-Instruct-GGUF",
        hf_filename="qwen2.5-0.5b-instruct-q4_k_m.gguf",
        expected_size_bytes=397_000_000,
        native_context_length=32768,
        supports_tool_calling=True,
        description="Qwen2.5 0.5B - Smallest, fastest option",
    ),
    ModelDescriptor(
        name="qwen2.5-7b",
        variant="q4_k_m",
        hf_repo_id="Qwen/Qwen2.5-7B-Instruct-GGUF",
        hf_filename="qwen2.5-7b-instruct-q4_k_m.gguf",
        expected_size_bytes=4_680_000_000,
        native_context_length=32768,
        supports_tool_calling=True,
        description="Qwen2.5 7B - Best quality, needs more RAM",
    ),
    ModelDescriptor(
        name="qwen3-4b",
        variant="Q4_K_M",
        hf_repo_id="unsloth/Qwen3-4B-Instruct-2507-GGUF",
        hf_filename="Qwen3-4B-Instruct-2507-Q4_K_M.gguf",
        expected_size_bytes=2_644_000_000,
        native_context_length=32768,
        supports_tool_calling=True,
        description="Qwen3 4B - Fast, efficient, tool calling support",
    ),
]
