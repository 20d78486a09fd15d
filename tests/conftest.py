from __future__ import annotations

import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, Iterator, Optional

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_project_root_on_path()

from koboldkeeper_core import MemorySettingsStore  # noqa: E402


class Route:
    def __init__(self, status: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None,
                 send_length: bool = True, truncate_at: Optional[int] = None, piece_size: int = 0,
                 piece_delay_s: float = 0.0):
        self.status = status
        self.body = body
        self.headers = headers or {}
        self.send_length = send_length
        self.truncate_at = truncate_at
        self.piece_size = piece_size
        self.piece_delay_s = piece_delay_s

    def pieces(self) -> Iterator[bytes]:
        body = self.body if self.truncate_at is None else self.body[:self.truncate_at]
        if not self.piece_size:
            yield body
            return
        for start in range(0, len(body), self.piece_size):
            yield body[start:start + self.piece_size]


class LocalServer:
    """Threaded HTTP server with routes registered per test."""

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.requests: list = []
        server = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.0"

            def log_message(self, format, *args):  # noqa: A002
                pass

            def _route(self) -> Optional[Route]:
                server.requests.append((self.command, self.path))
                route = server.routes.get(self.path)
                if route is None:
                    self.send_response(404)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                return route

            def _send_head(self, route: Route) -> None:
                self.send_response(route.status)
                for key, value in route.headers.items():
                    self.send_header(key, value)
                if route.send_length:
                    self.send_header("Content-Length", str(len(route.body)))
                self.end_headers()

            def do_GET(self):
                route = self._route()
                if route is None:
                    return
                self._send_head(route)
                for piece in route.pieces():
                    self.wfile.write(piece)
                    self.wfile.flush()
                    if route.piece_delay_s:
                        time.sleep(route.piece_delay_s)

            def do_HEAD(self):
                route = self._route()
                if route is None:
                    return
                self._send_head(route)

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.httpd.daemon_threads = True
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return self.base_url + path

    def add(self, path: str, body: bytes = b"", status: int = 200, headers: Optional[Dict[str, str]] = None,
            send_length: bool = True, truncate_at: Optional[int] = None, piece_size: int = 0,
            piece_delay_s: float = 0.0) -> str:
        """Registers a route. ``truncate_at`` sends the full Content-Length but cuts the body short."""
        self.routes[path] = Route(status, body, headers, send_length, truncate_at, piece_size, piece_delay_s)
        return self.url(path)

    def add_redirect_chain(self, prefix: str, hops: int, final_body: bytes) -> str:
        """``hops`` redirects ending at a 200 response. Returns the first URL."""
        for index in range(hops):
            self.add(f"{prefix}/{index}", status=302, headers={"Location": f"{prefix}/{index + 1}"})
        self.add(f"{prefix}/{hops}", final_body)
        return self.url(f"{prefix}/0")


@pytest.fixture
def http_server() -> Iterator[LocalServer]:
    server = LocalServer()
    server.thread.start()
    try:
        yield server
    finally:
        server.httpd.shutdown()
        server.httpd.server_close()


@pytest.fixture
def settings() -> MemorySettingsStore:
    return MemorySettingsStore()


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    root = tmp_path / "backends"
    root.mkdir()
    return root


def pytest_configure(config) -> None:
    config.addinivalue_line("markers", "posix_only: needs POSIX signals or shell scripts")


def pytest_collection_modifyitems(config, items) -> None:
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="POSIX only")
    for item in items:
        if "posix_only" in item.keywords:
            item.add_marker(skip)