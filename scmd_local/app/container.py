# Local backend wiring and the process-wide supervisor registry.
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional
import atexit
import logging
import threading

from scmd_local.app.hardware import ResourceProfiler
from scmd_local.app.local_backend import LocalBackend
from scmd_local.app.model_catalog import ModelCatalog
from scmd_local.app.settings import BackendSettings
from scmd_local.config.paths_config import DataPaths
from scmd_local.helpers.downloader import ResilientDownloader
from scmd_local.nlp.llm.server_process import ServerSupervisor

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_supervisors: Dict[Path, ServerSupervisor] = {}


def get_supervisor(paths: DataPaths, settings: Optional[BackendSettings] = None) -> ServerSupervisor:
    """
    One supervisor per data directory for the whole process.

    The first call creates it and registers its `stop` to run at interpreter
    exit; later calls return the same object.
    """
    with _registry_lock:
        sup = _supervisors.get(paths.data_dir)
        if sup is None:
            kwargs = {}
            if settings is not None:
                kwargs = dict(
                    health_timeout_s=settings.health_timeout_s,
                    grace_period_s=settings.stop_grace_s,
                )
            sup = ServerSupervisor(paths, profiler=ResourceProfiler(), **kwargs)
            _supervisors[paths.data_dir] = sup
            # Ensure the server is stopped cleanly on program exit
            atexit.register(sup.stop)
            logger.debug("Created supervisor for %s", paths.data_dir)
        return sup


def build_catalog(settings: BackendSettings, downloader: Optional[ResilientDownloader] = None) -> ModelCatalog:
    return ModelCatalog(
        settings.paths,
        downloader or ResilientDownloader(),
        allow_download=settings.allow_download,
        quiet=settings.quiet,
    )


def build_local_backend(settings: BackendSettings, *, server_url: Optional[str] = None) -> LocalBackend:
    """
    Backend builder
    Responsibility:
     - Creates the data directory layout
     - Wires catalog, downloader and the shared supervisor together
     - Returns a backend that initializes lazily
    """
    settings.paths.ensure_dirs()
    catalog = build_catalog(settings)
    supervisor = get_supervisor(settings.paths, settings)
    return LocalBackend(settings, catalog, supervisor, server_url=server_url)
