from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional
from urllib.parse import urlsplit
import logging
import threading

import requests

from scmd_local.app.model_catalog import ModelCatalog
from scmd_local.app.settings import BackendSettings
from scmd_local.helpers.units import format_bytes
from scmd_local.interfaces.backend.messages import (
    CompletionRequest,
    CompletionResponse,
    ModelInfo,
    StreamChunk,
    ToolRequest,
    ToolResponse,
)
from scmd_local.interfaces.errors import BackendNotInitializedError
from scmd_local.nlp.llm.client import CompletionParams, InferenceClient
from scmd_local.nlp.llm.config_resolver import resolve_server_config
from scmd_local.nlp.llm.prompt_format import build_prompt, build_tool_prompt, parse_tool_calls
from scmd_local.nlp.llm.server_process import ServerSupervisor

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT = 4096


class ContextSource(Enum):
    UNSET = "unset"
    EXPLICIT = "explicit"   # set by the caller, never auto-tuned
    DERIVED = "derived"     # taken from the catalog during initialize


@dataclass
class BackendState:
    model_name: str
    resolved_model_path: Optional[Path] = None
    context_size: Optional[int] = None
    context_source: ContextSource = ContextSource.UNSET
    initialized: bool = False


class LocalBackend:
    """
    Runs completions on a local llama-server.

    `initialize` resolves (and if needed downloads) the model and makes sure a
    server is running for it. The request methods call it implicitly, so the
    first request after `set_model` pays for the switch.
    """

    name = "llamacpp"

    def __init__(
        self,
        settings: BackendSettings,
        catalog: ModelCatalog,
        supervisor: ServerSupervisor,
        *,
        server_url: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.supervisor = supervisor
        self._server_url = server_url
        self._http = http
        self._client: Optional[InferenceClient] = None
        self._state = BackendState(model_name=settings.model_name)
        self._lock = threading.RLock()

    @property
    def state(self) -> BackendState:
        return self._state

    # ---------- configuration ----------

    def set_model(self, model: str) -> None:
        with self._lock:
            self._state.model_name = model
            self._state.resolved_model_path = None
            if self._state.context_source is ContextSource.DERIVED:
                self._state.context_size = None
                self._state.context_source = ContextSource.UNSET
            self._invalidate()

    def set_context_size(self, size: Optional[int]) -> None:
        """Pin the context window. ``None`` or a non-positive value goes back to auto."""
        with self._lock:
            if size and size > 0:
                self._state.context_size = int(size)
                self._state.context_source = ContextSource.EXPLICIT
            else:
                self._state.context_size = None
                self._state.context_source = ContextSource.UNSET
            self._invalidate()

    def set_server_url(self, url: Optional[str]) -> None:
        """Use an externally managed llama-server instead of the supervised one."""
        with self._lock:
            self._server_url = url.rstrip("/") if url else None
            self._invalidate()

    def _invalidate(self) -> None:
        self._state.initialized = False
        self._client = None

    # ---------- lifecycle ----------

    def initialize(self, *, cancel: Optional[threading.Event] = None) -> None:
        with self._lock:
            if self._state.initialized:
                return

            model_path = self.catalog.resolve(self._state.model_name, cancel=cancel)
            self._state.resolved_model_path = model_path
            spec = self.catalog.find(self._state.model_name)
            native = spec.native_context_length if spec else DEFAULT_CONTEXT

            if self._state.context_source is not ContextSource.EXPLICIT:
                self._state.context_size = native
                self._state.context_source = ContextSource.DERIVED
            logger.debug(
                "Model %s at %s, context %d (%s)",
                self._state.model_name, model_path, self._state.context_size, self._state.context_source.value,
            )

            self._client = self._connect(model_path, native, cancel)
            self._state.initialized = True

    def _connect(self, model_path: Path, native: int, cancel: Optional[threading.Event]) -> InferenceClient:
        s = self.settings
        if self._server_url:
            logger.debug("Using external llama-server at %s", self._server_url)
            return self._make_client(self._server_url, s.cpu_only)

        if s.no_autostart:
            if not self.supervisor.is_listening(s.host, s.port):
                raise BackendNotInitializedError(
                    f"SCMD_NO_AUTOSTART is set and no llama-server is answering on {s.host}:{s.port}"
                )
            return self._make_client(f"http://{s.host}:{s.port}", s.cpu_only)

        cfg = resolve_server_config(
            s,
            model_path,
            server_overrides={"context_size": self._state.context_size, "native_context": native},
        )
        handle = self.supervisor.ensure(cfg, cancel=cancel)
        return self._make_client(handle.base_url, s.cpu_only or handle.cpu_only)

    def _make_client(self, base_url: str, cpu_only: bool) -> InferenceClient:
        return InferenceClient(
            base_url=base_url,
            cpu_only=cpu_only,
            timeout_s=self.settings.request_timeout_s,
            cpu_timeout_s=self.settings.cpu_request_timeout_s,
            http=self._http,
        )

    def is_available(self) -> bool:
        if self._server_url:
            parts = urlsplit(self._server_url)
            return self.supervisor.is_listening(parts.hostname or "127.0.0.1", parts.port or 80)
        if self.supervisor.is_listening(self.settings.host, self.settings.port):
            return True
        if self.settings.no_autostart:
            return False
        return self.supervisor.has_binary()

    def shutdown(self, *, stop_server: bool = False) -> None:
        """
        Forget the connection. The supervised server keeps running for other
        callers unless `stop_server` is set; it is stopped at interpreter exit.
        """
        with self._lock:
            self._invalidate()
            if stop_server:
                self.supervisor.stop()

    # ---------- requests ----------

    def _ready_client(self) -> InferenceClient:
        self.initialize()
        if self._client is None:
            raise BackendNotInitializedError("backend has no inference client")
        return self._client

    @staticmethod
    def _params(req: CompletionRequest) -> CompletionParams:
        return CompletionParams(max_tokens=req.max_tokens, temperature=req.temperature)

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        client = self._ready_client()
        content = client.complete(build_prompt(request), self._params(request))
        return CompletionResponse(content=content)

    def stream(self, request: CompletionRequest) -> Iterator[StreamChunk]:
        # single final chunk; llama-server is not asked to stream tokens
        client = self._ready_client()
        for text in client.stream(build_prompt(request), self._params(request)):
            yield StreamChunk(content=text, done=True)

    def complete_with_tools(self, request: ToolRequest) -> ToolResponse:
        client = self._ready_client()
        content = client.complete(build_tool_prompt(request), self._params(request))
        return ToolResponse(content=content, tool_calls=parse_tool_calls(content))

    # ---------- model facts ----------

    def list_models(self) -> List[str]:
        return [s.name for s in self.catalog.list_known()]

    def model_info(self) -> ModelInfo:
        spec = self.catalog.find(self._state.model_name)
        if spec is None:
            return ModelInfo(
                name=self._state.model_name,
                context_length=self._state.context_size or DEFAULT_CONTEXT,
                capabilities=["chat"],
            )
        caps = ["chat", "tool_calling"] if spec.supports_tool_calling else ["chat"]
        return ModelInfo(
            name=spec.name,
            size=format_bytes(spec.expected_size_bytes),
            quantization=spec.variant,
            context_length=spec.native_context_length,
            capabilities=caps,
        )

    def supports_tool_calling(self) -> bool:
        spec = self.catalog.find(self._state.model_name)
        return bool(spec and spec.supports_tool_calling)

    @staticmethod
    def estimate_tokens(text: str) -> int:
        # roughly four characters per token for English text
        return len(text) // 4
