import http.server
import io
import socket
import sys
import tarfile
import threading
import zipfile
from pathlib import Path
from typing import Optional

import pytest

# Ensure the package src/ is on sys.path for tests
THIS_DIR = Path(__file__).resolve().parent
PKG_ROOT = THIS_DIR.parent
SRC_DIR = PKG_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def echo_server_files(port: int) -> dict[str, str]:
    """A stand-in JabLS: a shell launcher plus a Python echo server on port."""
    script = (
        "import socket\n"
        f"srv = socket.create_server(('127.0.0.1', {port}))\n"
        "print('listening', flush=True)\n"
        "while True:\n"
        "    conn, _ = srv.accept()\n"
        "    with conn:\n"
        "        for line in conn.makefile('rb'):\n"
        "            conn.sendall(line)\n"
    )
    launcher = f'#!/bin/sh\nexec "{sys.executable}" echo_server.py\n'
    return {"jabls/bin/jabls": launcher, "jabls/bin/echo_server.py": script}


def make_tar_gz(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, text in files.items():
            data = text.encode("utf-8")
            ti = tarfile.TarInfo(name)
            ti.size = len(data)
            ti.mode = 0o644
            tf.addfile(ti, io.BytesIO(data))
    return buf.getvalue()


def make_zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buf.getvalue()


class ArchiveServer:
    """Serves one archive over HTTP with a configurable Last-Modified header."""

    def __init__(self) -> None:
        self.body = b""
        self.last_modified: Optional[str] = "2024-01-01"
        self.status = 200
        self.requests: list[str] = []
        self._httpd: Optional[http.server.ThreadingHTTPServer] = None

    @property
    def url(self) -> str:
        assert self._httpd is not None
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}/jabls-portable.tar.gz"

    def count(self, method: str) -> int:
        return sum(1 for m in self.requests if m == method)

    def start(self) -> None:
        server = self

        class Handler(http.server.BaseHTTPRequestHandler):
            def _headers(self) -> None:
                self.send_response(server.status)
                if server.last_modified is not None:
                    self.send_header("Last-Modified", server.last_modified)
                self.send_header("Content-Length", str(len(server.body) if server.status < 400 else 0))
                self.end_headers()

            def do_HEAD(self) -> None:
                server.requests.append("HEAD")
                self._headers()

            def do_GET(self) -> None:
                server.requests.append("GET")
                self._headers()
                if server.status < 400:
                    self.wfile.write(server.body)

            def log_message(self, format: str, *args: object) -> None:
                pass

        self._httpd = http.server.ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        threading.Thread(target=self._httpd.serve_forever, name="archive-server", daemon=True).start()

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()


@pytest.fixture
def archive_server():
    server = ArchiveServer()
    server.start()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def log_lines():
    lines: list[tuple[str, str]] = []
    lock = threading.Lock()

    def logger(ts, level, msg):
        with lock:
            lines.append((level, msg))

    logger.lines = lines
    return logger
