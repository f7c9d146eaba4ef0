"""Tests for ModelCatalog: lookup, cache resolution, download on miss, delete."""

from unittest.mock import Mock

import pytest

from scmd_local.app.model_catalog import ModelCatalog
from scmd_local.config.local_models import DEFAULT_MODEL, MODEL_SPECS, ModelDescriptor
from scmd_local.helpers.downloader import DownloadConfig, ResilientDownloader
from scmd_local.helpers.retry import BackoffPolicy
from scmd_local.interfaces.errors import ModelNotCachedError, UnknownModelError
from conftest import make_payload


def _demo_spec(url: str, size: int) -> ModelDescriptor:
    return ModelDescriptor(
        name="demo-1b",
        variant="q4",
        hf_repo_id="example/demo-1b-GGUF",
        hf_filename="demo-1b-q4.gguf",
        expected_size_bytes=size,
        native_context_length=8192,
        supports_tool_calling=False,
        description="Demo model",
        size_is_exact=True,
        url=url,
    )


def test_builtin_catalog():
    names = [s.name for s in MODEL_SPECS]
    assert DEFAULT_MODEL in names
    assert len(names) == len(set(names))
    spec = next(s for s in MODEL_SPECS if s.name == DEFAULT_MODEL)
    assert spec.local_filename == "qwen3-4b-Q4_K_M.gguf"
    assert spec.source_url.startswith("https://huggingface.co/")
    assert spec.source_url.endswith(spec.hf_filename)


def test_cached_model_resolves_without_download(data_paths):
    downloader = Mock()
    catalog = ModelCatalog(data_paths, downloader, quiet=True)
    spec = catalog.find("qwen2.5-0.5b")
    catalog.local_path(spec).write_bytes(b"GGUF")

    assert catalog.resolve("qwen2.5-0.5b") == catalog.local_path(spec)
    downloader.download.assert_not_called()


def test_unknown_name_is_treated_as_path(data_paths, tmp_path):
    literal = tmp_path / "custom.gguf"
    literal.write_bytes(b"GGUF")
    catalog = ModelCatalog(data_paths, Mock(), quiet=True)

    assert catalog.resolve(str(literal)) == literal
    with pytest.raises(UnknownModelError):
        catalog.resolve("no-such-model")


def test_test_mode_refuses_download(data_paths):
    downloader = Mock()
    catalog = ModelCatalog(data_paths, downloader, allow_download=False, quiet=True)

    with pytest.raises(ModelNotCachedError):
        catalog.resolve(DEFAULT_MODEL)
    downloader.download.assert_not_called()


def test_cache_miss_downloads_with_descriptor_settings(data_paths):
    downloader = Mock()
    downloader.download.side_effect = lambda url, dest, *a, **kw: dest
    catalog = ModelCatalog(data_paths, downloader, quiet=True, progress_factory=lambda spec: None)

    path = catalog.resolve("qwen2.5-1.5b")

    spec = catalog.find("qwen2.5-1.5b")
    args, kwargs = downloader.download.call_args
    assert args[0] == spec.source_url
    assert args[1] == path == catalog.local_path(spec)
    assert args[2] == spec.expected_size_bytes
    assert kwargs["verify_size"] is False


def test_demo_model_end_to_end(data_paths, file_server, fake_sleep):
    """Resolving a missing model downloads it across a dropped connection."""
    payload = make_payload(1_000_000)
    srv = file_server(payload)
    srv.disconnect_at = [400_000]
    downloader = ResilientDownloader(
        DownloadConfig(policy=BackoffPolicy(), buffer_size=10_000),
        sleep=fake_sleep,
    )
    catalog = ModelCatalog(
        data_paths, downloader, [_demo_spec(srv.url, len(payload))], quiet=True,
    )

    path = catalog.resolve("demo-1b")

    assert path == data_paths.models_dir / "demo-1b-q4.gguf"
    assert path.read_bytes() == payload
    assert srv.requests == [None, "bytes=400000-"]
    assert catalog.resolve("demo-1b") == path
    assert len(srv.requests) == 2


def test_list_cached_skips_partial_files(data_paths):
    (data_paths.models_dir / "a.gguf").write_bytes(b"1")
    (data_paths.models_dir / "b.gguf.tmp").write_bytes(b"1")
    catalog = ModelCatalog(data_paths, Mock())

    assert [p.name for p in catalog.list_cached()] == ["a.gguf"]


def test_delete_by_name_and_filename(data_paths):
    catalog = ModelCatalog(data_paths, Mock())
    spec = catalog.find(DEFAULT_MODEL)
    target = catalog.local_path(spec)
    target.write_bytes(b"GGUF")
    target.with_name(target.name + ".tmp").write_bytes(b"partial")
    (data_paths.models_dir / "other.gguf").write_bytes(b"GGUF")

    assert catalog.delete(DEFAULT_MODEL) == target
    assert not target.exists()
    assert not target.with_name(target.name + ".tmp").exists()
    catalog.delete("other.gguf")
    assert catalog.list_cached() == []

    with pytest.raises(UnknownModelError):
        catalog.delete(DEFAULT_MODEL)
