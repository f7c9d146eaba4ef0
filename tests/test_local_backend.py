"""Tests for the LocalBackend facade with a fake supervisor and HTTP session."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from scmd_local.app.local_backend import DEFAULT_CONTEXT, ContextSource, LocalBackend
from scmd_local.app.model_catalog import ModelCatalog
from scmd_local.app.settings import BackendSettings
from scmd_local.interfaces.backend.contract import Backend
from scmd_local.interfaces.backend.messages import CompletionRequest, ToolRequest
from scmd_local.interfaces.errors import BackendNotInitializedError


def _http(content="answer"):
    http = Mock()
    http.post.return_value = SimpleNamespace(status_code=200, text="", json=lambda: {"content": content})
    return http


def _supervisor():
    sup = Mock()
    sup.ensure.side_effect = lambda cfg, cancel=None: SimpleNamespace(
        base_url=f"http://{cfg.host}:{cfg.port}", cpu_only=cfg.cpu_only
    )
    return sup


@pytest.fixture
def settings(tmp_path):
    s = BackendSettings.from_env({"SCMD_DATA_DIR": str(tmp_path / "scmd")}, model_name="qwen2.5-0.5b")
    s.paths.ensure_dirs()
    return s


@pytest.fixture
def catalog(settings):
    cat = ModelCatalog(settings.paths, Mock(), quiet=True)
    for name in ("qwen2.5-0.5b", "qwen2.5-3b"):
        cat.local_path(cat.find(name)).write_bytes(b"GGUF")
    return cat


def _backend(settings, catalog, sup=None, http=None, **kwargs):
    return LocalBackend(settings, catalog, sup or _supervisor(), http=http or _http(), **kwargs)


def test_initialize_is_idempotent(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)

    backend.initialize()
    backend.initialize()

    assert sup.ensure.call_count == 1
    assert backend.state.initialized
    assert backend.state.resolved_model_path == catalog.local_path(catalog.find("qwen2.5-0.5b"))


def test_explicit_context_wins_over_catalog(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)
    backend.set_context_size(8192)

    backend.initialize()

    assert sup.ensure.call_args[0][0].context_size == 8192
    assert backend.state.context_source is ContextSource.EXPLICIT


def test_context_derived_from_catalog(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)

    backend.initialize()

    cfg = sup.ensure.call_args[0][0]
    assert cfg.context_size == 32768
    assert backend.state.context_source is ContextSource.DERIVED


def test_context_change_after_initialize_reaches_supervisor(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)
    backend.initialize()
    assert sup.ensure.call_args[0][0].context_size == 32768

    backend.set_context_size(8192)
    assert not backend.state.initialized
    backend.complete(CompletionRequest(prompt="q"))

    assert sup.ensure.call_count == 2
    assert sup.ensure.call_args[0][0].context_size == 8192


def test_unknown_literal_model_gets_default_context(settings, catalog, tmp_path):
    literal = tmp_path / "custom.gguf"
    literal.write_bytes(b"GGUF")
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)
    backend.set_model(str(literal))

    backend.initialize()

    assert sup.ensure.call_args[0][0].context_size == DEFAULT_CONTEXT


def test_set_model_forces_reinitialize(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)
    backend.set_context_size(8192)
    backend.initialize()

    backend.set_model("qwen2.5-3b")
    assert not backend.state.initialized
    backend.initialize()

    assert sup.ensure.call_count == 2
    cfg = sup.ensure.call_args[0][0]
    assert cfg.model_path.name == "qwen2.5-3b-q4_k_m.gguf"
    assert cfg.context_size == 8192


def test_complete_builds_chatml_prompt(settings, catalog):
    http = _http("  the answer ")
    backend = _backend(settings, catalog, http=http)

    resp = backend.complete(CompletionRequest(prompt="q", system_prompt="s", max_tokens=10))

    assert resp.content == "the answer"
    payload = http.post.call_args[1]["json"]
    assert payload["prompt"].startswith("<|im_start|>system\ns<|im_end|>")
    assert payload["n_predict"] == 10
    assert http.post.call_args[0][0] == "http://127.0.0.1:8089/completion"


def test_stream_yields_single_final_chunk(settings, catalog):
    backend = _backend(settings, catalog)
    chunks = list(backend.stream(CompletionRequest(prompt="q")))
    assert len(chunks) == 1
    assert chunks[0].done and chunks[0].content == "answer"


def test_complete_with_tools_parses_calls(settings, catalog):
    http = _http('<tool_call>{"name": "ls", "parameters": {"path": "."}}</tool_call>')
    backend = _backend(settings, catalog, http=http)

    resp = backend.complete_with_tools(ToolRequest(prompt="list files"))

    assert resp.tool_calls[0].name == "ls"
    assert resp.tool_calls[0].parameters == {"path": "."}


def test_external_server_url_skips_supervisor(settings, catalog):
    sup = _supervisor()
    http = _http()
    backend = _backend(settings, catalog, sup, http=http)
    backend.set_server_url("http://10.0.0.5:9000/")

    backend.complete(CompletionRequest(prompt="q"))

    sup.ensure.assert_not_called()
    assert http.post.call_args[0][0] == "http://10.0.0.5:9000/completion"


def test_no_autostart_requires_running_server(tmp_path, catalog):
    settings = BackendSettings.from_env(
        {"SCMD_DATA_DIR": str(catalog.paths.data_dir), "SCMD_NO_AUTOSTART": "1"},
        model_name="qwen2.5-0.5b",
    )
    sup = _supervisor()
    sup.is_listening.return_value = False
    backend = _backend(settings, catalog, sup)

    with pytest.raises(BackendNotInitializedError):
        backend.initialize()
    sup.ensure.assert_not_called()


def test_model_info_and_helpers(settings, catalog):
    backend = _backend(settings, catalog)

    info = backend.model_info()
    assert info.name == "qwen2.5-0.5b"
    assert info.quantization == "q4_k_m"
    assert info.context_length == 32768
    assert "tool_calling" in info.capabilities
    assert backend.supports_tool_calling()
    assert "qwen3-4b" in backend.list_models()
    assert backend.estimate_tokens("abcdefgh") == 2
    assert backend.name == "llamacpp"


def test_shutdown_can_stop_server(settings, catalog):
    sup = _supervisor()
    backend = _backend(settings, catalog, sup)
    backend.initialize()

    backend.shutdown()
    sup.stop.assert_not_called()
    assert not backend.state.initialized

    backend.shutdown(stop_server=True)
    sup.stop.assert_called_once()


def test_is_available(settings, catalog):
    sup = _supervisor()
    sup.is_listening.return_value = False
    sup.has_binary.return_value = True
    assert _backend(settings, catalog, sup).is_available()

    sup.has_binary.return_value = False
    assert not _backend(settings, catalog, sup).is_available()


def test_satisfies_backend_protocol(settings, catalog):
    assert isinstance(_backend(settings, catalog), Backend)
