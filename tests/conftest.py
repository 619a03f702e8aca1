# tests/conftest.py
"""
Common fixtures for all test types
These are shared across unit and integration tests
"""

import io
import os
import tarfile
import tempfile
import threading
import time
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest
import yaml
from requests.structures import CaseInsensitiveDict

# Add project root to Python path so 'ingress_uploader' can be imported
# This allows tests to run without installing the package
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


PROXY_ENV_VARS = [
    "HTTP_PROXY", "http_proxy",
    "HTTPS_PROXY", "https_proxy",
    "NO_PROXY", "no_proxy",
    "ALL_PROXY", "all_proxy",
]


@pytest.fixture(autouse=True)
def clean_proxy_env(monkeypatch):
    """Tests start without any proxy variables from the host environment"""
    for name in PROXY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def report_dir(temp_dir):
    """Directory the uploader watches for archives"""
    path = temp_dir / "reports"
    path.mkdir()
    yield path


@pytest.fixture
def archive_factory(report_dir):
    """
    Create .tar.gz archives in the report directory.

    Usage:
        path = archive_factory('insights-1.tar.gz', {'config/id': b'abc'}, mtime=1700000000)
    """

    def _create(name, members=None, mtime=None, directory=None):
        members = members if members is not None else {"data.json": b'{"ok": true}'}
        path = Path(directory or report_dir) / name
        with tarfile.open(path, "w:gz") as archive:
            for member_name, data in members.items():
                info = tarfile.TarInfo(member_name)
                info.size = len(data)
                info.mtime = 1700000000
                archive.addfile(info, io.BytesIO(data))
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _create


def _deep_merge(base, overrides):
    merged = dict(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def config_factory(temp_dir, report_dir):
    """
    Write a config file with test defaults; nested overrides are merged.

    Usage:
        path = config_factory({'reporting': {'enabled': False}})
    """

    def _write(overrides=None, filename="config.yaml"):
        base = {
            "reporting": {
                "enabled": True,
                "endpoint": "http://127.0.0.1:9/upload",
                "interval_seconds": 15,
                "tick_timeout_seconds": 10,
            },
            "storage": {
                "path": str(report_dir),
                "file_prefix": "insights-",
                "file_suffix": ".tar.gz",
                "reporting_mode": "latest",
                "status_file": str(temp_dir / "status.json"),
            },
            "monitoring": {"cloudwatch_enabled": False},
        }
        path = temp_dir / filename
        with open(path, "w") as f:
            yaml.safe_dump(_deep_merge(base, overrides), f)
        return path

    return _write


class RecordedRequest:
    def __init__(self, method, path, headers, body):
        self.method = method
        self.path = path
        self.headers = headers
        self.body = body


class _IngressHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def do_POST(self):
        body = self._read_body()
        self.server.stub.requests.append(
            RecordedRequest("POST", self.path, CaseInsensitiveDict(self.headers.items()), body)
        )

        status, response_body, headers, drip_seconds = self.server.stub.response
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response_body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.close_connection = True
        if not drip_seconds:
            self.wfile.write(response_body)
            return

        # Slow server: one byte at a time
        for i in range(len(response_body)):
            time.sleep(drip_seconds)
            try:
                self.wfile.write(response_body[i:i + 1])
            except OSError:
                return

    def _read_body(self):
        if self.headers.get("Transfer-Encoding", "").lower() == "chunked":
            chunks = []
            while True:
                size_line = self.rfile.readline()
                if not size_line.strip():
                    # Client went away mid-body
                    break
                size = int(size_line.split(b";")[0].strip(), 16)
                if size == 0:
                    # Skip trailers up to the terminating blank line
                    while self.rfile.readline() not in (b"\r\n", b"\n", b""):
                        pass
                    break
                chunks.append(self.rfile.read(size))
                self.rfile.readline()
            return b"".join(chunks)

        length = int(self.headers.get("Content-Length", 0))
        return self.rfile.read(length) if length else b""

    def log_message(self, format, *args):
        pass


class _QuietHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def handle_error(self, request, client_address):
        # Clients aborting mid-body are expected in some tests
        pass


class IngressStub:
    """Local HTTP server standing in for the ingress endpoint"""

    def __init__(self):
        self.requests = []
        self.response = (202, b"", {}, 0)
        self._server = _QuietHTTPServer(("127.0.0.1", 0), _IngressHandler)
        self._server.stub = self
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def url(self):
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}/api/ingress/v1/upload"

    def respond_with(self, status, body=b"", headers=None, drip_seconds=0):
        self.response = (status, body, headers or {}, drip_seconds)

    def start(self):
        self._thread.start()

    def stop(self):
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)


@pytest.fixture
def ingress_server():
    """Threaded ingress stub on 127.0.0.1; decodes chunked request bodies"""
    stub = IngressStub()
    stub.start()
    yield stub
    stub.stop()


def parse_single_part(content_type, body):
    """
    Split a single-part multipart/form-data body.

    Asserts the framing is intact and returns (part_headers, content).
    """
    assert content_type.startswith("multipart/form-data; boundary=")
    boundary = content_type.split("boundary=", 1)[1].encode()
    opening = b"--" + boundary + b"\r\n"
    closing = b"\r\n--" + boundary + b"--\r\n"

    assert body.startswith(opening), "missing opening boundary"
    assert body.endswith(closing), "missing closing boundary"

    inner = body[len(opening):len(body) - len(closing)]
    header_blob, content = inner.split(b"\r\n\r\n", 1)
    headers = {}
    for line in header_blob.decode("utf-8").split("\r\n"):
        name, value = line.split(": ", 1)
        headers[name] = value
    return headers, content


@pytest.fixture
def multipart_parser():
    """Access to parse_single_part from test modules"""
    return parse_single_part

