from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Optional
import logging
import os
import signal
import subprocess
import threading
import time

import psutil
import requests

from scmd_local.app.hardware import ResourceProfiler
from scmd_local.config.paths_config import DataPaths
from scmd_local.helpers.llama_binary import find_llama_server
from scmd_local.interfaces.errors import (
    BinaryNotFoundError,
    LaunchTimeoutError,
    ServerStartCancelled,
    ServerStartError,
)
from scmd_local.nlp.llm.config_resolver import ServerConfig, fill_launch_defaults

logger = logging.getLogger(__name__)

HEALTH_REQUEST_TIMEOUT_S = 0.5
HEALTH_POLL_INITIAL_S = 0.05
HEALTH_POLL_MAX_S = 0.5
LOG_ROTATE_BYTES = 10 * 1024 * 1024

ProbeFn = Callable[[str, int], bool]


class ServerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


def probe_health(host: str, port: int, timeout: float = HEALTH_REQUEST_TIMEOUT_S) -> bool:
    """True when ``GET /health`` answers 200. Anything else means not ready."""
    try:
        r = requests.get(f"http://{host}:{port}/health", timeout=timeout)
    except requests.RequestException:
        return False
    with r:
        return r.status_code == 200


def build_server_args(server_bin: Path, cfg: ServerConfig) -> list[str]:
    """
    llama-server command line for a fully resolved config.

    CPU-only mode keeps batches small and leaves out every flag that can pull
    in the GPU framework even with zero offloaded layers (flash attention, f16
    KV cache, mlock, no-mmap).
    """
    threads = str(cfg.threads or os.cpu_count() or 1)
    gpu_layers = 0 if cfg.cpu_only else cfg.gpu_layers
    args = [
        str(server_bin),
        "-m", str(cfg.model_path),
        "--host", cfg.host,
        "--port", str(cfg.port),
        "-c", str(cfg.context_size),
        "-ngl", str(gpu_layers),
        "--log-disable",
    ]
    if cfg.cpu_only:
        args += [
            "--parallel", "4",
            "--batch-size", "512",
            "--ubatch-size", "256",
            "-t", threads,
            "--threads-batch", threads,
            "--cont-batching",
        ]
    else:
        args += [
            "--parallel", "8",
            "--batch-size", "2048",
            "--ubatch-size", "512",
            "--mlock",
            "-t", threads,
            "--threads-batch", threads,
            "--cache-type-k", "f16",
            "--cache-type-v", "f16",
            "--flash-attn", "on",
            "--cont-batching",
            "--no-mmap",
        ]
    return args


def open_rotating_log(path: Path, max_bytes: int = LOG_ROTATE_BYTES) -> IO[bytes]:
    """Append handle for the server log; an oversized log is moved to ``.1`` first."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() and path.stat().st_size > max_bytes:
        os.replace(path, path.with_name(path.name + ".1"))
    return path.open("ab")


def _interrupt(proc: subprocess.Popen) -> None:
    if os.name == "nt":
        proc.terminate()
    else:
        proc.send_signal(signal.SIGINT)


@dataclass
class ServerHandle:
    """
    The one supervised llama-server.

    `release` is the single cleanup path: it reaps the process, closes the
    log file and removes the PID file, and is safe to call repeatedly.
    """
    host: str
    port: int
    model_path: Path
    process: Optional[subprocess.Popen] = None   # None for an adopted server
    log_file: Optional[IO[bytes]] = None
    pid_file: Optional[Path] = None
    adopted_pid: Optional[int] = None
    ready: bool = False
    context_size: Optional[int] = None
    gpu_layers: Optional[int] = None
    cpu_only: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else self.adopted_pid

    @property
    def external(self) -> bool:
        return self.process is None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def is_alive(self) -> bool:
        if self.process is None:
            return self.ready
        return self.process.poll() is None

    def release(self) -> None:
        try:
            if self.process is not None and self.process.poll() is None:
                self.process.kill()
                self.process.wait()
        finally:
            if self.log_file is not None:
                self.log_file.close()
                self.log_file = None
            if self.pid_file is not None:
                self.pid_file.unlink(missing_ok=True)
                self.pid_file = None
            self.ready = False


class ServerSupervisor:
    """
    Owns at most one llama-server for a data directory.

    `ensure` and `stop` are serialized by a lock, so concurrent callers never
    spawn two servers on the same port.
    """

    def __init__(
        self,
        paths: DataPaths,
        *,
        profiler: Optional[ResourceProfiler] = None,
        locate_binary: Optional[Callable[[], Path]] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        probe: ProbeFn = probe_health,
        health_timeout_s: float = 30.0,
        grace_period_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.paths = paths
        self.profiler = profiler or ResourceProfiler()
        self._locate_binary = locate_binary or (lambda: find_llama_server(paths.bin_dir))
        self._popen = popen
        self._probe = probe
        self.health_timeout_s = health_timeout_s
        self.grace_period_s = grace_period_s
        self._sleep = sleep
        self._lock = threading.RLock()
        self._handle: Optional[ServerHandle] = None
        self._state = ServerState.STOPPED

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def handle(self) -> Optional[ServerHandle]:
        return self._handle

    def is_listening(self, host: str, port: int) -> bool:
        return self._probe(host, port)

    def has_binary(self) -> bool:
        try:
            self._locate_binary()
        except BinaryNotFoundError:
            return False
        return True

    # ---------- ensure ----------

    def ensure(self, cfg: ServerConfig, *, cancel: Optional[threading.Event] = None) -> ServerHandle:
        with self._lock:
            current = self._handle
            if current is not None and current.ready and current.is_alive() and self._matches(current, cfg):
                logger.debug("Using existing server with model %s", cfg.model_path)
                return current

            if current is not None:
                if current.model_path != cfg.model_path:
                    logger.debug("Model changed from %s to %s, restarting server", current.model_path, cfg.model_path)
                else:
                    logger.debug("Config changed, restarting server")
                self._stop_locked()

            if self._probe(cfg.host, cfg.port):
                return self._adopt(cfg)

            return self._spawn(cfg, cancel)

    @staticmethod
    def _matches(handle: ServerHandle, cfg: ServerConfig) -> bool:
        if handle.model_path != cfg.model_path:
            return False
        # launch flags of an adopted server are not ours to change
        if handle.external:
            return True
        if cfg.context_size is not None and cfg.context_size != handle.context_size:
            return False
        return cfg.cpu_only == handle.cpu_only

    def _adopt(self, cfg: ServerConfig) -> ServerHandle:
        pid = self.recorded_pid()
        logger.debug("Using existing llama-server on port %d (pid %s)", cfg.port, pid)
        self._handle = ServerHandle(
            host=cfg.host,
            port=cfg.port,
            model_path=cfg.model_path,
            adopted_pid=pid,
            ready=True,
            context_size=cfg.context_size,
            gpu_layers=cfg.gpu_layers,
            cpu_only=cfg.cpu_only,
        )
        self._state = ServerState.READY
        return self._handle

    def _spawn(self, cfg: ServerConfig, cancel: Optional[threading.Event]) -> ServerHandle:
        resolved = fill_launch_defaults(cfg, self.profiler)
        server_bin = self._locate_binary()
        args = build_server_args(server_bin, resolved)

        env = os.environ.copy()
        if resolved.cpu_only:
            # keep llama.cpp from initializing Metal at all
            env["GGML_METAL_DISABLE"] = "1"
            logger.debug("Running in CPU-only mode; GPU-dependent flags removed")

        log_file: Optional[IO[bytes]] = None
        try:
            log_file = open_rotating_log(self.paths.server_log)
        except OSError as e:
            logger.warning("Could not open server log %s: %s", self.paths.server_log, e)

        self.recorded_pid()  # drops a stale PID file
        logger.debug("Starting llama-server: %s", " ".join(args))
        self._state = ServerState.STARTING
        try:
            proc = self._popen(
                args,
                stdout=log_file if log_file is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=env,
            )
        except OSError as e:
            if log_file is not None:
                log_file.close()
            self._state = ServerState.STOPPED
            raise ServerStartError("start server", e, f"Could not launch {server_bin}.") from e

        handle = ServerHandle(
            host=resolved.host,
            port=resolved.port,
            model_path=resolved.model_path,
            process=proc,
            log_file=log_file,
            context_size=resolved.context_size,
            gpu_layers=resolved.gpu_layers,
            cpu_only=resolved.cpu_only,
        )
        try:
            self._wait_ready(handle, cancel)
        except BaseException:
            handle.release()
            self._state = ServerState.STOPPED
            raise

        handle.ready = True
        handle.pid_file = self._write_pid_file(proc.pid)
        self._handle = handle
        self._state = ServerState.READY
        logger.debug("llama-server started successfully (PID: %d)", proc.pid)
        return handle

    def _wait_ready(self, handle: ServerHandle, cancel: Optional[threading.Event]) -> None:
        assert handle.process is not None
        deadline = time.monotonic() + self.health_timeout_s
        delay = HEALTH_POLL_INITIAL_S
        while True:
            if cancel is not None and cancel.is_set():
                raise ServerStartCancelled("server start cancelled")

            rc = handle.process.poll()
            if rc is not None:
                raise ServerStartError(
                    "start server",
                    f"llama-server exited during startup (exit code {rc})",
                    f"See the server log for details: {self.paths.server_log}",
                    ["Check that the model file is a valid GGUF file", "Try SCMD_CPU_ONLY=1 if GPU initialization fails"],
                )

            if self._probe(handle.host, handle.port):
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LaunchTimeoutError(
                    "start server",
                    f"server not ready after {self.health_timeout_s:g}s",
                    f"See the server log for details: {self.paths.server_log}",
                    ["Try again; large models can take a while to load", "Use a smaller model"],
                )
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, HEALTH_POLL_MAX_S)

    # ---------- stop ----------

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._state = ServerState.STOPPING
        try:
            proc = handle.process
            if proc is not None and proc.poll() is None:
                _interrupt(proc)
                try:
                    proc.wait(timeout=self.grace_period_s)
                except subprocess.TimeoutExpired:
                    logger.warning("llama-server did not exit within %gs; killing it", self.grace_period_s)
                    proc.kill()
                    proc.wait()
        finally:
            handle.release()
            self._handle = None
            self._state = ServerState.STOPPED

    def stop_recorded(self) -> Optional[int]:
        """
        Stop the server named in the PID file, including one started by an
        earlier invocation. Returns the PID that was stopped, if any.
        """
        with self._lock:
            if self._handle is not None and not self._handle.external:
                pid = self._handle.pid
                self._stop_locked()
                return pid

            pid = self.recorded_pid()
            if pid is None:
                return None
            try:
                proc = psutil.Process(pid)
                if "llama-server" not in proc.name():
                    logger.warning("PID %d is not a llama-server; leaving it alone", pid)
                    return None
                if os.name == "nt":
                    proc.terminate()
                else:
                    proc.send_signal(signal.SIGINT)
                _, alive = psutil.wait_procs([proc], timeout=self.grace_period_s)
                for p in alive:
                    p.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug("Could not stop recorded PID %d: %s", pid, e)
            finally:
                self.paths.pid_file.unlink(missing_ok=True)
            if self._handle is not None:
                self._handle.release()
                self._handle = None
                self._state = ServerState.STOPPED
            return pid

    # ---------- PID file ----------

    def recorded_pid(self) -> Optional[int]:
        """PID from the PID file if that process is still alive; stale files are removed."""
        try:
            pid = int(self.paths.pid_file.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            self.paths.pid_file.unlink(missing_ok=True)
            return None
        if not psutil.pid_exists(pid):
            self.paths.pid_file.unlink(missing_ok=True)
            return None
        return pid

    def _write_pid_file(self, pid: int) -> Optional[Path]:
        path = self.paths.pid_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(str(pid))
        except OSError as e:
            logger.warning("Could not write PID file %s: %s", path, e)
            return None
        return path
