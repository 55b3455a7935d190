import ipaddress
import socket
import ssl

import pytest

from dnsrelay.bootstrap import Bootstrapper, new_bootstrapper_resolved
from dnsrelay.upstream_base import Options, UpstreamError


@pytest.fixture
def listener():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    yield sock
    sock.close()


def _closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class _FakeResolver:
    def __init__(self, answer=None, error=None):
        self.answer = answer or []
        self.error = error
        self.hosts = []

    def lookup_ip_addr(self, host):
        self.hosts.append(host)
        if self.error is not None:
            raise self.error
        return self.answer


def test_dialer_falls_back_to_working_address(listener):
    port = listener.getsockname()[1]
    boot = Bootstrapper("tls://127.0.0.1:853", Options(timeout=2))
    dial = boot.create_dialer(
        [f"127.0.0.1:{_closed_port()}", f"127.0.0.1:{port}"]
    )
    conn = dial("tcp", "")
    try:
        assert conn.getpeername()[1] == port
    finally:
        conn.close()


def test_dialer_all_fail_collects_errors():
    boot = Bootstrapper("tls://127.0.0.1:853", Options(timeout=2))
    dial = boot.create_dialer(
        [f"127.0.0.1:{_closed_port()}", f"127.0.0.1:{_closed_port()}"]
    )
    with pytest.raises(UpstreamError) as info:
        dial("tcp")
    assert len(info.value.errors) == 2
    assert info.value.message == "all dialers failed to initialize connection"


def test_dialer_without_addresses():
    boot = Bootstrapper("tls://127.0.0.1:853", Options())
    with pytest.raises(UpstreamError) as info:
        boot.create_dialer([])()
    assert info.value.errors == ()


def test_get_with_ip_host_is_cached(listener):
    port = listener.getsockname()[1]
    boot = Bootstrapper(f"tls://127.0.0.1:{port}", Options())
    first = boot.get()
    assert first.server_name == "127.0.0.1"
    assert boot.get() is first
    conn = first.dial("tcp")
    try:
        assert conn.getpeername()[1] == port
    finally:
        conn.close()


def test_get_requires_port():
    boot = Bootstrapper("tls://127.0.0.1", Options())
    with pytest.raises(UpstreamError, match="requires port"):
        boot.get()


def test_get_resolves_hostname_with_resolvers(listener):
    port = listener.getsockname()[1]
    resolver = _FakeResolver([ipaddress.ip_address("127.0.0.1")])
    boot = Bootstrapper(f"tls://dns.example.org:{port}", Options(), [resolver])
    resolved = boot.get()
    assert resolver.hosts == ["dns.example.org"]
    assert resolved.server_name == "dns.example.org"
    conn = resolved.dial()
    try:
        assert conn.getpeername()[0] == "127.0.0.1"
    finally:
        conn.close()


def test_get_without_addresses_fails():
    boot = Bootstrapper("tls://dns.example.org:853", Options(), [_FakeResolver([])])
    with pytest.raises(UpstreamError, match="couldn't find any suitable IP address"):
        boot.get()


def test_get_lookup_error_is_wrapped():
    resolver = _FakeResolver(error=OSError("no route"))
    boot = Bootstrapper("tls://dns.example.org:853", Options(), [resolver])
    with pytest.raises(UpstreamError, match="failed to lookup dns.example.org"):
        boot.get()


def test_tls_context_defaults():
    boot = Bootstrapper("tls://127.0.0.1:853", Options())
    context = boot.create_tls_context("dns.example.org")
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert context.server_name == "dns.example.org"


def test_tls_context_insecure():
    boot = Bootstrapper("https://127.0.0.1:443", Options(insecure_skip_verify=True))
    context = boot.create_tls_context("127.0.0.1")
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_address_is_url_string():
    boot = Bootstrapper("tls://one.example.org:853", Options())
    assert boot.address == "tls://one.example.org:853"


def test_resolved_bootstrapper_uses_server_ips(listener):
    port = listener.getsockname()[1]
    options = Options(server_ip_addrs=[ipaddress.ip_address("127.0.0.1")])
    boot = new_bootstrapper_resolved(f"https://dns.example.org:{port}/dns-query", options)
    resolved = boot.get()
    assert resolved.server_name == "dns.example.org"
    conn = resolved.dial("tcp")
    try:
        assert conn.getpeername() == ("127.0.0.1", port)
    finally:
        conn.close()


def test_resolved_bootstrapper_requires_port():
    options = Options(server_ip_addrs=[ipaddress.ip_address("127.0.0.1")])
    with pytest.raises(UpstreamError, match="requires port"):
        new_bootstrapper_resolved("tls://dns.example.org", options)