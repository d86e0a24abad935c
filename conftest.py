import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

import pytest


class _Handler(BaseHTTPRequestHandler):
    # Requests seen by the server, as (method, path, query, headers, body)
    requests: list = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int, body: str, content_type: str = "application/json") -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def _record(self, body: str = "") -> str:
        url = urlparse(self.path)
        self.requests.append((self.command, url.path, parse_qs(url.query), dict(self.headers), body))
        return url.path

    def do_GET(self) -> None:  # noqa: N802
        path = self._record()
        routes = {
            "/sonarr/api/health": (200, json.dumps([
                {"type": "warning", "message": "Indexers unavailable due to failures", "wikiUrl": "https://wiki/a"},
                {"type": "error", "message": "Download client is unavailable", "wikiUrl": None},
            ])),
            "/healthy/api/health": (200, "[]"),
            "/broken/api/health": (500, "Internal Server Error"),
            "/garbage/api/health": (200, "<html>not json</html>"),
            "/object/api/health": (200, json.dumps({"message": "not a list"})),
        }
        status, body = routes.get(path, (404, "Not Found"))
        self._reply(status, body)

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length", "0"))
        path = self._record(self.rfile.read(length).decode("utf-8"))
        if path == "/v3/mail/send":
            self._reply(202, "")
        else:
            self._reply(401, json.dumps({"errors": [{"message": "bad key"}]}))


@pytest.fixture(scope="module")
def local_server():
    """Base URL of a local server standing in for Sonarr and SendGrid."""
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture
def server_requests():
    _Handler.requests.clear()
    return _Handler.requests
