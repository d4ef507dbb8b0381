"""Integration tests for health probing against real HTTP servers.

=============================================================================
Test Server Overview
=============================================================================

A plain-HTTP server is started on 127.0.0.1 for the duration of the module:

    /           200 OK
    /broken     500 Internal Server Error (served on the "broken" port)
    /private    401 unless Basic auth me:secret is sent

Because the server speaks plain HTTP, every probe first fails its HTTPS
attempt with a TLS error and then falls back to HTTP, exactly as a homelab
service without a certificate would.

A port that was bound and released stands in for a service that is gone.

These tests open local sockets only; no outside network access is needed.
=============================================================================
"""

import base64
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator, Optional

import pytest

from homelab_proxy.health import Credentials, ErrorKind, HealthProber, Protocol, probe_all
from homelab_proxy.report import build_report

EXPECTED_AUTH = "Basic " + base64.b64encode(b"me:secret").decode()


def _make_handler(status: int, require_auth: bool = False):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if require_auth and self.headers.get("Authorization") != EXPECTED_AUTH:
                self.send_response(401)
                self.send_header("WWW-Authenticate", 'Basic realm="homelab"')
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            self.send_response(status)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, format: str, *args) -> None:
            pass

    return Handler


def _serve(handler) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def _host(server: ThreadingHTTPServer) -> str:
    return f"127.0.0.1:{server.server_address[1]}"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="module")
def servers() -> Iterator[dict]:
    started = {
        "ok": _serve(_make_handler(200)),
        "broken": _serve(_make_handler(500)),
        "private": _serve(_make_handler(200, require_auth=True)),
    }
    yield {name: _host(server) for name, server in started.items()}
    for server in started.values():
        server.shutdown()
        server.server_close()


@pytest.mark.integration
def test_plain_http_service_is_healthy(servers: dict) -> None:
    result = HealthProber().probe(servers["ok"], 2000)

    assert result.is_healthy is True
    assert result.protocol == Protocol.HTTP
    assert result.status_code == 200


@pytest.mark.integration
def test_server_error_is_stale(servers: dict) -> None:
    result = HealthProber().probe(servers["broken"], 2000)

    assert result.is_healthy is False
    assert result.error_kind == ErrorKind.HTTP_SERVER_ERROR
    assert result.reason == "HTTP 500"


@pytest.mark.integration
def test_closed_port_is_refused() -> None:
    result = HealthProber().probe(f"127.0.0.1:{_free_port()}", 2000)

    assert result.is_healthy is False
    assert result.error_kind == ErrorKind.CONNECTION_REFUSED


@pytest.mark.integration
def test_basic_auth_challenge(servers: dict) -> None:
    prober = HealthProber()

    anonymous = prober.probe(servers["private"], 2000)
    saved = prober.probe(servers["private"], 2000, saved_credentials=Credentials("me", "secret"))
    wrong = prober.probe(servers["private"], 2000, saved_credentials=Credentials("me", "nope"))

    assert anonymous.error_kind == ErrorKind.AUTH_REQUIRED
    assert saved.is_healthy is True
    assert wrong.error_kind == ErrorKind.AUTH_FAILED


@pytest.mark.integration
def test_prompted_credentials(servers: dict) -> None:
    asked = []

    def provider(hostname: str) -> Optional[Credentials]:
        asked.append(hostname)
        return Credentials("me", "secret")

    result = HealthProber().probe(servers["private"], 2000, auth_provider=provider)

    assert result.is_healthy is True
    assert result.auth_attempted is True
    assert asked == [servers["private"]]


@pytest.mark.integration
def test_batch_against_live_servers(servers: dict) -> None:
    hosts = [servers["ok"], servers["broken"], f"127.0.0.1:{_free_port()}", servers["ok"]]

    results = probe_all(hosts, 2000, 2)
    report = build_report(results)

    assert [r.hostname for r in results] == hosts
    assert report.healthy_count == 2
    assert report.stale_count == 2
    assert report.healthy_percentage == 50
