from __future__ import annotations

import json
import socket
import sys
import time
from pathlib import Path
from threading import Thread
from typing import Dict, Iterator, Tuple
from wsgiref.simple_server import WSGIRequestHandler, make_server

import pytest

# Ensure repo root is on sys.path so the exporter modules import under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shelly_exporter import make_session  # noqa: E402
from shelly_smart_plug_exporter import ThreadingWSGIServer  # noqa: E402

GOOD_SHELLY_DATA = json.dumps(
    {
        "apower": 1.0,
        "voltage": 2.0,
        "current": 3.0,
        "temperature": {"tC": 20.1, "tF": 68.2},
        "aenergy": {"total": 45645634.12},
    }
)

_REASONS = {200: "OK", 404: "Not Found", 500: "Internal Server Error", 503: "Service Unavailable"}


class _SilentHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        return


class FakePlugServer:
    """Tiny HTTP server standing in for one or more Shelly plugs.

    Each path is mapped to a (status, body, delay) triple; unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Tuple[int, str, float]] = {}
        self.hits: Dict[str, int] = {}
        self.httpd = make_server(
            "127.0.0.1", 0, self._app, server_class=ThreadingWSGIServer, handler_class=_SilentHandler
        )
        self.thread = Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}"

    def mock(self, path: str, status: int = 200, body: str = "", delay: float = 0.0) -> str:
        self.routes[path] = (status, body, delay)
        return f"{self.url}{path}"

    def _app(self, environ, start_response):
        path = environ.get("PATH_INFO", "")
        self.hits[path] = self.hits.get(path, 0) + 1
        status, body, delay = self.routes.get(path, (404, "", 0.0))
        if delay:
            time.sleep(delay)
        start_response(f"{status} {_REASONS.get(status, 'Unknown')}", [("Content-Type", "application/json")])
        return [body.encode("utf-8")]


@pytest.fixture
def fake_server() -> Iterator[FakePlugServer]:
    srv = FakePlugServer()
    srv.thread.start()
    try:
        yield srv
    finally:
        srv.httpd.shutdown()
        srv.httpd.server_close()


@pytest.fixture
def session():
    s = make_session()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def closed_port_url() -> str:
    """URL on localhost where nothing is listening."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/rpc/Switch.GetStatus?id=0"
