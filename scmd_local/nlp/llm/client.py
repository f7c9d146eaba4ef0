from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlsplit, urlunsplit
import logging

import requests

from scmd_local.interfaces.errors import (
    InferenceEmptyError,
    InferenceHTTPError,
    InferenceServerError,
)
from scmd_local.nlp.llm.prompt_format import STOP_SEQUENCES

logger = logging.getLogger(__name__)
JSONDict = Dict[str, Any]

DEFAULT_N_PREDICT = 2048
DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class CompletionParams:
    max_tokens: int = 0        # 0 = DEFAULT_N_PREDICT
    temperature: float = 0.0   # 0 = DEFAULT_TEMPERATURE


@dataclass(frozen=True)
class CompletionPayload:
    """Body of ``POST /completion``."""
    prompt: str
    n_predict: int
    temperature: float
    stop: List[str] = field(default_factory=lambda: list(STOP_SEQUENCES))
    stream: bool = False

    @classmethod
    def build(cls, prompt: str, params: Optional[CompletionParams] = None) -> "CompletionPayload":
        params = params or CompletionParams()
        return cls(
            prompt=prompt,
            n_predict=params.max_tokens or DEFAULT_N_PREDICT,
            temperature=params.temperature or DEFAULT_TEMPERATURE,
        )


def _preview(s: str, n: int = 200) -> str:
    return s if len(s) <= n else s[:n] + "..."


@dataclass
class InferenceClient:
    """Narrow client for llama-server's native ``/completion`` endpoint."""
    base_url: str
    cpu_only: bool = False
    timeout_s: float = 120.0
    cpu_timeout_s: float = 600.0
    http: Optional[requests.Session] = None

    def _url(self, path: str) -> str:
        """
        Replace the path of base_url with `path`.
        """
        parts = urlsplit(self.base_url)
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    @property
    def effective_timeout_s(self) -> float:
        return self.cpu_timeout_s if self.cpu_only else self.timeout_s

    def _post_json(self, url: str, payload: JSONDict) -> requests.Response:
        poster = self.http.post if self.http is not None else requests.post
        try:
            r = poster(url, json=payload, timeout=self.effective_timeout_s)
        except requests.RequestException as e:
            raise InferenceHTTPError(f"HTTP request to {url} failed: {e}") from e
        if r.status_code != 200:
            raise InferenceHTTPError(
                f"llama-server HTTP {r.status_code}: {r.text[:1000]}",
                status_code=r.status_code,
                body=r.text,
            )
        return r

    def complete(self, prompt: str, params: Optional[CompletionParams] = None) -> str:
        payload = CompletionPayload.build(prompt, params)
        url = self._url("/completion")
        logger.debug("Sending request to %s (timeout %gs)", url, self.effective_timeout_s)
        logger.debug("Prompt length: %d chars", len(prompt))

        r = self._post_json(url, asdict(payload))
        try:
            data = r.json()
        except ValueError as e:
            raise InferenceHTTPError(f"could not parse llama-server response: {e}", status_code=r.status_code, body=r.text) from e
        if not isinstance(data, dict):
            raise InferenceHTTPError("unexpected llama-server response", status_code=r.status_code, body=r.text)

        content = (data.get("content") or "").strip()
        if not content:
            err = data.get("error")
            if err:
                if isinstance(err, dict):
                    err = err.get("message") or str(err)
                raise InferenceServerError(f"llama-server: {err}", status_code=r.status_code, body=r.text)
            raise InferenceEmptyError(
                f"empty response from model. Prompt was: {_preview(prompt, 100)}"
            )

        logger.debug("Response: %s", _preview(content, 500))
        return content

    def stream(self, prompt: str, params: Optional[CompletionParams] = None) -> Iterator[str]:
        """
        Yields the response text.

        llama-server is called without token streaming, so the whole
        completion arrives as one chunk.
        """
        yield self.complete(prompt, params)
