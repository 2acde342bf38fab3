"""Socket-level integration tests for the static content server."""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from config import MAX_BODY_BYTES, ServerConfig
from server import HTTPServer


@pytest.fixture()
def site(tmp_path: Path) -> Path:
    (tmp_path / "docs").mkdir()
    (tmp_path / "index.html").write_bytes(b"<h1>home</h1>")
    (tmp_path / "docs" / "index.html").write_bytes(b"<h1>docs</h1>")
    (tmp_path / "logo.bin").write_bytes(bytes(range(256)) * 100)
    return tmp_path


def _start_server(root: Path, **overrides: object) -> tuple[HTTPServer, threading.Thread]:
    config = ServerConfig(root_dir=str(root), port=0, drain_timeout_secs=1.0, **overrides)
    server = HTTPServer.from_config(config)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()

    deadline = time.time() + 3
    while server.port == 0 and time.time() < deadline:
        time.sleep(0.01)

    if server.port == 0:
        raise RuntimeError("Server did not bind to a port")

    return server, thread


def _stop_server(server: HTTPServer, thread: threading.Thread) -> None:
    server.stop()
    thread.join(timeout=3.0)


def _send_raw(host: str, port: int, payload: bytes) -> bytes:
    with socket.create_connection((host, port), timeout=2.0) as client:
        client.sendall(payload)
        response = b""
        while chunk := client.recv(8192):
            response += chunk
        return response


def _get(server: HTTPServer, target: str, *extra_headers: bytes) -> bytes:
    payload = (
        f"GET {target} HTTP/1.1\r\n".encode("ascii")
        + b"Host: localhost\r\n"
        + b"".join(header + b"\r\n" for header in extra_headers)
        + b"Connection: close\r\n\r\n"
    )
    return _send_raw(server.host, server.port, payload)


def _split(response: bytes) -> tuple[bytes, bytes]:
    head, _, body = response.partition(b"\r\n\r\n")
    return head, body


def test_every_file_is_served_byte_for_byte(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        responses = {
            "/index.html": _get(server, "/index.html"),
            "/docs/index.html": _get(server, "/docs/index.html"),
            "/logo.bin": _get(server, "/logo.bin"),
        }
    finally:
        _stop_server(server, thread)

    for target, response in responses.items():
        head, body = _split(response)
        assert head.startswith(b"HTTP/1.1 200 OK")
        assert b"Content-Type" not in head
        assert body == (site / target.lstrip("/")).read_bytes()


def test_root_and_directory_paths_fall_back_to_index(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        root = _get(server, "/")
        index = _get(server, "/index.html")
        docs = _get(server, "/docs/")
    finally:
        _stop_server(server, thread)

    assert _split(root)[1] == _split(index)[1] == b"<h1>home</h1>"
    assert _split(docs)[1] == b"<h1>docs</h1>"


def test_missing_path_returns_empty_404(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        response = _get(server, "/nope.html")
    finally:
        _stop_server(server, thread)

    head, body = _split(response)
    assert head.startswith(b"HTTP/1.1 404 Not Found")
    assert body == b""


@pytest.mark.parametrize("method", [b"HEAD", b"POST", b"PUT", b"DELETE"])
def test_non_get_methods_return_405(site: Path, method: bytes) -> None:
    server, thread = _start_server(site)
    try:
        response = _send_raw(
            server.host,
            server.port,
            method + b" /index.html HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n",
        )
    finally:
        _stop_server(server, thread)

    head, body = _split(response)
    assert head.startswith(b"HTTP/1.1 405 Method Not Allowed")
    assert body == b""


def test_forwarded_http_request_is_redirected(site: Path) -> None:
    server, thread = _start_server(site, redirect_http=True)
    try:
        payload = (
            b"GET /a?b=1 HTTP/1.1\r\n"
            b"Host: example.com\r\n"
            b"X-Forwarded-Proto: http\r\n"
            b"Connection: close\r\n"
            b"\r\n"
        )
        response = _send_raw(server.host, server.port, payload)
    finally:
        _stop_server(server, thread)

    head, body = _split(response)
    assert head.startswith(b"HTTP/1.1 301 Moved Permanently")
    assert b"Location: https://example.com/a?b=1\r\n" in head + b"\r\n"
    assert body == b""


def test_redirect_disabled_routes_normally(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        response = _get(server, "/index.html", b"X-Forwarded-Proto: http")
    finally:
        _stop_server(server, thread)

    assert response.startswith(b"HTTP/1.1 200 OK")


def test_redirect_without_authority_returns_400_and_server_survives(site: Path) -> None:
    server, thread = _start_server(site, redirect_http=True)
    try:
        bad = _send_raw(
            server.host,
            server.port,
            b"GET /a HTTP/1.0\r\nX-Forwarded-Proto: http\r\n\r\n",
        )
        good = _get(server, "/index.html")
    finally:
        _stop_server(server, thread)

    assert bad.startswith(b"HTTP/1.1 400 Bad Request")
    assert good.startswith(b"HTTP/1.1 200 OK")


def test_empty_root_serves_404_everywhere(tmp_path: Path) -> None:
    server, thread = _start_server(tmp_path)
    try:
        responses = [_get(server, target) for target in ["/", "/index.html", "/x/"]]
    finally:
        _stop_server(server, thread)

    assert all(response.startswith(b"HTTP/1.1 404 Not Found") for response in responses)


def test_concurrent_requests(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        with ThreadPoolExecutor(max_workers=20) as executor:
            futures = [executor.submit(_get, server, "/logo.bin") for _ in range(20)]
            responses = [future.result() for future in futures]
    finally:
        _stop_server(server, thread)

    expected = (site / "logo.bin").read_bytes()
    assert len(responses) == 20
    assert all(_split(response)[1] == expected for response in responses)


def test_malformed_request_returns_400(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        response = _send_raw(server.host, server.port, b"BROKEN\r\n\r\n")
    finally:
        _stop_server(server, thread)

    assert response.startswith(b"HTTP/1.1 400 Bad Request")
    assert b"Connection: close" in response


def test_oversized_body_returns_413(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        payload = (
            b"POST /index.html HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            + f"Content-Length: {MAX_BODY_BYTES + 1}\r\n".encode("ascii")
            + b"\r\n"
        )
        response = _send_raw(server.host, server.port, payload)
    finally:
        _stop_server(server, thread)

    assert response.startswith(b"HTTP/1.1 413 Payload Too Large")


def test_unsupported_version_returns_505(site: Path) -> None:
    server, thread = _start_server(site)
    try:
        response = _send_raw(server.host, server.port, b"GET / HTTP/2.0\r\nHost: x\r\n\r\n")
    finally:
        _stop_server(server, thread)

    assert response.startswith(b"HTTP/1.1 505 HTTP Version Not Supported")


def test_authority_form_get_is_rejected_with_400(site: Path) -> None:
    server, thread = _start_server(site, redirect_http=True)
    try:
        response = _send_raw(
            server.host,
            server.port,
            b"GET example.com:80 HTTP/1.1\r\n"
            b"Host: example.com\r\n"
            b"X-Forwarded-Proto: http\r\n"
            b"\r\n",
        )
    finally:
        _stop_server(server, thread)

    assert response.startswith(b"HTTP/1.1 400 Bad Request")
    assert b"Location:" not in response


def _access_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [
        record
        for record in caplog.records
        if record.name == "server" and "status" in record.getMessage()
    ]


def test_json_access_log_records_request_fields(
    site: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="server"):
        server, thread = _start_server(site, log_format="json")
        try:
            response = _get(server, "/index.html")
        finally:
            _stop_server(server, thread)

    records = _access_records(caplog)
    assert len(records) == 1
    event = json.loads(records[0].getMessage())
    assert set(event) == {"client", "method", "path", "status", "bytes_out", "latency_ms"}
    assert event["client"] == "127.0.0.1"
    assert event["method"] == "GET"
    assert event["path"] == "/index.html"
    assert event["status"] == 200
    assert event["bytes_out"] == len(response)
    assert event["latency_ms"] >= 0


def test_plain_access_log_line(site: Path, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="server"):
        server, thread = _start_server(site)
        try:
            response = _get(server, "/missing")
        finally:
            _stop_server(server, thread)

    messages = [record.getMessage() for record in _access_records(caplog)]
    assert len(messages) == 1
    assert messages[0].startswith(
        f"client=127.0.0.1 method=GET path=/missing status=404 bytes_out={len(response)} "
    )
    assert "duration_ms=" in messages[0]
