import base64
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import dns.message
import dns.rrset
import pytest

from dnsrelay.doh import DNSOverHTTPS
from dnsrelay.upstream_base import Options, UpstreamError


class _State:
    status = 200
    bad_id = False
    paths: list = []
    accepts: list = []


def _handler_for(state):
    class Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, *args):
            pass

        def do_GET(self):
            state.paths.append(self.path)
            state.accepts.append(self.headers.get("Accept"))
            param = parse_qs(urlsplit(self.path).query)["dns"][0]
            wire = base64.urlsafe_b64decode(param + "=" * (-len(param) % 4))
            req = dns.message.from_wire(wire)
            resp = dns.message.make_response(req)
            resp.answer.append(
                dns.rrset.from_text(req.question[0].name, 300, "IN", "A", "8.8.8.8")
            )
            if state.bad_id:
                resp.id = (req.id + 1) % 65536
            body = resp.to_wire()
            self.send_response(state.status)
            self.send_header("Content-Type", "application/dns-message")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

    return Handler


class _PlainContext:
    def set_alpn_protocols(self, protocols):
        self.protocols = protocols

    def wrap_socket(self, sock, server_hostname=None):
        return sock


class _Url:
    def __init__(self, port):
        self.path = "/dns-query"
        self.query = ""
        self.hostname = "127.0.0.1"
        self.port = port


class _Boot:
    def __init__(self, port):
        self.url = _Url(port)
        self.options = Options(timeout=3)
        self.address = f"https://127.0.0.1:{port}/dns-query"
        self.gets = 0
        self._port = port

    def get(self):
        self.gets += 1

        def dial(network="tcp", addr=""):
            return socket.create_connection(("127.0.0.1", self._port), timeout=3)

        return _PlainContext(), dial, "127.0.0.1"


@pytest.fixture
def server():
    state = _State()
    state.paths = []
    state.accepts = []
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _handler_for(state))
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv.server_address[1], state
    srv.shutdown()
    srv.server_close()


def _query():
    return dns.message.make_query("google-public-dns-a.google.com.", "A")


def test_exchange_returns_reply(server):
    port, state = server
    u = DNSOverHTTPS(_Boot(port))
    req = _query()
    reply = u.exchange(req)
    assert reply.id == req.id
    assert [rr.address for rr in reply.answer[0]] == ["8.8.8.8"]
    assert state.paths[0].startswith("/dns-query?dns=")
    assert state.accepts == ["application/dns-message"]


def test_address_comes_from_bootstrapper(server):
    port, _ = server
    assert DNSOverHTTPS(_Boot(port)).address == f"https://127.0.0.1:{port}/dns-query"


def test_bad_status_raises(server):
    port, state = server
    state.status = 500
    with pytest.raises(UpstreamError, match="status code 500"):
        DNSOverHTTPS(_Boot(port)).exchange(_query())


def test_id_mismatch_raises(server):
    port, state = server
    state.bad_id = True
    with pytest.raises(UpstreamError, match="id mismatch"):
        DNSOverHTTPS(_Boot(port)).exchange(_query())


def test_client_is_reused_until_reset(server):
    port, _ = server
    boot = _Boot(port)
    u = DNSOverHTTPS(boot)
    u.exchange(_query())
    u.exchange(_query())
    assert boot.gets == 1
    u.reset()
    assert len(u.exchange(_query()).answer) == 1
    assert boot.gets == 2