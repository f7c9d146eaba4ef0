"""Shared fixtures: a local HTTP file server with Range support and scripted failures."""

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
import threading

import pytest

from scmd_local.config.paths_config import DataPaths


def make_payload(size: int) -> bytes:
    """Deterministic, non-repeating-looking test bytes."""
    return bytes((i * 31 + i // 7) % 256 for i in range(size))


class FileServer:
    """
    Serves one payload at ``/model.gguf``.

    - ``disconnect_at``: absolute byte offsets, one per request, at which the
      connection is dropped mid-body (``None`` = send everything).
    - ``fail_statuses``: HTTP statuses returned by the first requests.
    - ``support_range``: when False, Range headers are ignored (always 200).
    """

    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        self.disconnect_at: list = []
        self.fail_statuses: list = []
        self.support_range = True
        self.requests: list = []   # Range header per request (None if absent)
        self._lock = threading.Lock()
        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), self._handler_class())
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}/model.gguf"

    def start(self) -> "FileServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()

    def _next(self, queue: list):
        with self._lock:
            return queue.pop(0) if queue else None

    def _handler_class(self):
        server = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, *args):
                pass

            def do_GET(self):
                range_header = self.headers.get("Range")
                with server._lock:
                    server.requests.append(range_header)

                status = server._next(server.fail_statuses)
                if status is not None:
                    self.send_response(status)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    return

                payload = server.payload
                size = len(payload)
                start = 0
                if range_header and server.support_range:
                    start = int(range_header.split("=", 1)[1].split("-", 1)[0])
                    if start >= size:
                        self.send_response(416)
                        self.send_header("Content-Range", f"bytes */{size}")
                        self.send_header("Content-Length", "0")
                        self.end_headers()
                        return
                    self.send_response(206)
                    self.send_header("Content-Range", f"bytes {start}-{size - 1}/{size}")
                else:
                    self.send_response(200)
                self.send_header("Content-Length", str(size - start))
                self.end_headers()

                cut = server._next(server.disconnect_at)
                end = size if cut is None else max(cut, start)
                self.wfile.write(payload[start:end])
                self.wfile.flush()
                if cut is not None:
                    self.close_connection = True

        return Handler


@pytest.fixture
def file_server():
    """Factory fixture: ``file_server(payload)`` returns a running FileServer."""
    servers = []

    def _make(payload: bytes) -> FileServer:
        srv = FileServer(payload).start()
        servers.append(srv)
        return srv

    yield _make
    for srv in servers:
        srv.stop()


@pytest.fixture
def data_paths(tmp_path: Path) -> DataPaths:
    paths = DataPaths.from_strings(tmp_path / "scmd")
    paths.ensure_dirs()
    return paths


class RecordingSleep:
    """Stands in for time.sleep and records every requested delay."""

    def __init__(self) -> None:
        self.calls: list = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
