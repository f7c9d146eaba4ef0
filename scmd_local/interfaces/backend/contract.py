from __future__ import annotations

from typing import Iterator, List, Optional, Protocol, runtime_checkable
import threading

from scmd_local.interfaces.backend.messages import (
    CompletionRequest,
    CompletionResponse,
    ModelInfo,
    StreamChunk,
)


@runtime_checkable
class Backend(Protocol):
    """What command execution needs from a text-generation backend."""

    name: str

    def initialize(self, *, cancel: Optional[threading.Event] = None) -> None:
        ...

    def is_available(self) -> bool:
        ...

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        ...

    def stream(self, request: CompletionRequest) -> Iterator[StreamChunk]:
        ...

    def set_model(self, model: str) -> None:
        ...

    def list_models(self) -> List[str]:
        ...

    def model_info(self) -> ModelInfo:
        ...

    def shutdown(self) -> None:
        ...
