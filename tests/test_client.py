"""Tests for InferenceClient with a mocked requests session."""

from unittest.mock import Mock

import pytest
import requests

from scmd_local.interfaces.errors import InferenceEmptyError, InferenceHTTPError, InferenceServerError
from scmd_local.nlp.llm.client import CompletionParams, CompletionPayload, InferenceClient


def _response(status=200, json_data=None, text=None):
    r = Mock()
    r.status_code = status
    if json_data is None:
        r.json.side_effect = ValueError("not json")
    else:
        r.json.return_value = json_data
    r.text = text if text is not None else str(json_data)
    return r


def _client(response=None, *, side_effect=None, cpu_only=False):
    http = Mock()
    if side_effect is not None:
        http.post.side_effect = side_effect
    else:
        http.post.return_value = response
    return InferenceClient("http://127.0.0.1:8089/v1/ignored", cpu_only=cpu_only, http=http), http


def test_payload_defaults():
    p = CompletionPayload.build("hi")
    assert p.n_predict == 2048
    assert p.temperature == 0.7
    assert p.stop == ["<|im_end|>", "<|endoftext|>"]
    assert p.stream is False


def test_payload_keeps_explicit_values():
    p = CompletionPayload.build("hi", CompletionParams(max_tokens=64, temperature=0.2))
    assert (p.n_predict, p.temperature) == (64, 0.2)


def test_complete_posts_payload_and_strips_content():
    client, http = _client(_response(json_data={"content": "  hello \n"}))

    assert client.complete("prompt") == "hello"

    url = http.post.call_args[0][0]
    kwargs = http.post.call_args[1]
    assert url == "http://127.0.0.1:8089/completion"
    assert kwargs["json"]["prompt"] == "prompt"
    assert kwargs["json"]["n_predict"] == 2048
    assert kwargs["timeout"] == 120.0


def test_cpu_only_uses_long_timeout():
    client, http = _client(_response(json_data={"content": "x"}), cpu_only=True)
    client.complete("p")
    assert http.post.call_args[1]["timeout"] == 600.0


def test_connection_failure_is_http_error():
    client, _ = _client(side_effect=requests.ConnectionError("refused"))
    with pytest.raises(InferenceHTTPError, match="refused"):
        client.complete("p")


def test_non_200_is_http_error_with_status():
    client, _ = _client(_response(status=503, json_data={}, text="Loading model"))
    with pytest.raises(InferenceHTTPError) as ei:
        client.complete("p")
    assert ei.value.status_code == 503
    assert "Loading model" in str(ei.value)


def test_unparseable_body_is_http_error():
    client, _ = _client(_response(json_data=None, text="<html>"))
    with pytest.raises(InferenceHTTPError, match="could not parse"):
        client.complete("p")


def test_empty_content_with_error_field():
    client, _ = _client(_response(json_data={"content": "", "error": "context overflow"}))
    with pytest.raises(InferenceServerError, match="context overflow"):
        client.complete("p")


def test_empty_content_without_error():
    client, _ = _client(_response(json_data={"content": "   "}))
    with pytest.raises(InferenceEmptyError):
        client.complete("p")


def test_stream_yields_one_chunk():
    client, _ = _client(_response(json_data={"content": "all at once"}))
    assert list(client.stream("p")) == ["all at once"]
