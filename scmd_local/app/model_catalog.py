from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence
import logging
import threading

from scmd_local.config.local_models import GGUF_EXT, MODEL_SPECS, ModelDescriptor
from scmd_local.config.paths_config import DataPaths
from scmd_local.helpers.downloader import ProgressCallback, ResilientDownloader
from scmd_local.helpers.progress import DownloadProgressBar
from scmd_local.helpers.units import format_bytes
from scmd_local.interfaces.errors import ModelNotCachedError, UnknownModelError

logger = logging.getLogger(__name__)


class ModelCatalog:
    """
    Static table of known models plus the local cache under ``models/``.

    `resolve` is the only method that touches the network, and only on a
    cache miss for a catalog entry.
    """

    def __init__(
        self,
        paths: DataPaths,
        downloader: ResilientDownloader,
        specs: Sequence[ModelDescriptor] = MODEL_SPECS,
        *,
        allow_download: bool = True,
        quiet: bool = False,
        progress_factory: Optional[Callable[[ModelDescriptor], ProgressCallback]] = None,
    ) -> None:
        self.paths = paths
        self.downloader = downloader
        self.specs = list(specs)
        self.allow_download = allow_download
        self.quiet = quiet
        self._progress_factory = progress_factory
        self._lock = threading.Lock()

    # ---------- lookup ----------

    def find(self, name: str) -> Optional[ModelDescriptor]:
        return next((s for s in self.specs if s.name == name), None)

    def local_path(self, spec: ModelDescriptor) -> Path:
        return self.paths.models_dir / spec.local_filename

    def is_cached(self, spec: ModelDescriptor) -> bool:
        p = self.local_path(spec)
        return p.exists() and p.stat().st_size > 0

    def list_known(self) -> list[ModelDescriptor]:
        return list(self.specs)

    def list_cached(self) -> list[Path]:
        """GGUF files present in the models directory (partial `.tmp` files excluded)."""
        if not self.paths.models_dir.is_dir():
            return []
        return sorted(p for p in self.paths.models_dir.iterdir() if p.is_file() and p.suffix == GGUF_EXT)

    # ---------- resolve ----------

    def resolve(self, name: str, *, cancel: Optional[threading.Event] = None) -> Path:
        """
        Map a model name to a local GGUF file, downloading it on a cache miss.

        Names not in the catalog are treated as literal file paths.
        """
        with self._lock:
            spec = self.find(name)
            if spec is None:
                literal = Path(name).expanduser()
                if literal.exists():
                    return literal
                raise UnknownModelError(f"unknown model: {name}")

            target = self.local_path(spec)
            if target.exists():
                logger.debug("Model %s found in cache: %s", name, target)
                return target

            if not self.allow_download:
                raise ModelNotCachedError(
                    f"model {name} is not downloaded ({target}) and downloads are disabled in test mode"
                )

            return self._download(spec, target, cancel)

    def _download(self, spec: ModelDescriptor, target: Path, cancel: Optional[threading.Event]) -> Path:
        if not self.quiet:
            print(f"Downloading {spec.name} ({format_bytes(spec.expected_size_bytes)})...")

        progress = self._progress_factory(spec) if self._progress_factory else None
        bar = None
        if progress is None:
            bar = DownloadProgressBar(f"  {spec.name}", disable=self.quiet)
            progress = bar
        try:
            path = self.downloader.download(
                spec.source_url,
                target,
                spec.expected_size_bytes,
                progress,
                expected_sha256=spec.expected_sha256,
                verify_size=spec.size_is_exact,
                cancel=cancel,
            )
        finally:
            if bar is not None:
                bar.close()

        if not self.quiet:
            print(f"  Downloaded: {path}")
        return path

    # ---------- delete ----------

    def delete(self, name: str) -> Path:
        """Remove a cached model by catalog name or by filename."""
        with self._lock:
            spec = self.find(name)
            path = self.local_path(spec) if spec else self.paths.models_dir / Path(name).name
            partial = path.with_name(path.name + ".tmp")
            if not path.exists():
                if partial.exists():
                    partial.unlink()
                    return partial
                raise UnknownModelError(f"model not found: {name}")
            path.unlink()
            partial.unlink(missing_ok=True)
            logger.info("Deleted model %s", path)
            return path
