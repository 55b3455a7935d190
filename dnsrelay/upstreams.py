"""Building upstreams from addresses, DNS stamps and bootstrap resolvers."""

from __future__ import annotations

import base64
import dataclasses
import enum
import ipaddress
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import SplitResult, urlsplit

import dns.message
import dns.rdataclass
import dns.rdatatype

from .bootstrap import Bootstrapper, new_bootstrapper_resolved
from .doh import DNSOverHTTPS
from .dot import DNSOverTLS
from .plain import PlainDNS
from .proxyutil import ips_from_answers, sort_ip_addrs
from .upstream_base import (
    Options,
    Upstream,
    UpstreamError,
    join_host_port,
    parse_host_and_port,
    split_host_port,
)

log = logging.getLogger(__name__)


class StampProto(enum.IntEnum):
    """Protocol identifiers of DNS stamps."""

    PLAIN = 0x00
    DNSCRYPT = 0x01
    DOH = 0x02
    TLS = 0x03
    DOQ = 0x04


_DEFAULT_PORTS = {
    StampProto.PLAIN: 53,
    StampProto.DNSCRYPT: 443,
    StampProto.DOH: 443,
    StampProto.TLS: 853,
    StampProto.DOQ: 784,
}


@dataclass
class ServerStamp:
    """The decoded contents of an sdns:// stamp."""

    proto: StampProto
    props: int = 0
    server_addr: str = ""
    server_pk: bytes = b""
    hashes: list = field(default_factory=list)
    provider_name: str = ""
    path: str = ""
    bootstrap_ips: list = field(default_factory=list)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, count: int) -> bytes:
        if self.pos + count > len(self.data):
            raise ValueError("stamp is too short")
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def lp(self) -> bytes:
        return self.take(self.take(1)[0])

    def vlp(self) -> list:
        items = []
        while True:
            length = self.take(1)[0]
            items.append(self.take(length & 0x7F))
            if not length & 0x80:
                return items

    @property
    def done(self) -> bool:
        return self.pos >= len(self.data)


def _with_default_port(addr: str, port: int) -> str:
    if not addr:
        return addr
    if addr.startswith("["):
        return addr if "]:" in addr else f"{addr}:{port}"
    colons = addr.count(":")
    if colons == 1:
        return addr
    if colons > 1:
        return f"[{addr}]:{port}"
    return f"{addr}:{port}"


def parse_stamp(stamp: str) -> ServerStamp:
    """Decode an sdns:// DNS stamp; raise ValueError if it is malformed."""
    if not stamp.startswith("sdns://"):
        raise ValueError("stamps are expected to start with sdns://")
    body = stamp[len("sdns://"):]
    try:
        data = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except ValueError as exc:
        raise ValueError(f"invalid stamp encoding: {exc}") from exc
    if not data:
        raise ValueError("stamp is too short")

    try:
        proto = StampProto(data[0])
    except ValueError as exc:
        raise ValueError(f"unsupported stamp version or protocol: {data[0]}") from exc

    reader = _Reader(data[1:])
    result = ServerStamp(proto=proto)
    result.props = int.from_bytes(reader.take(8), "little")
    result.server_addr = _with_default_port(
        reader.lp().decode(), _DEFAULT_PORTS[proto]
    )
    if proto == StampProto.DNSCRYPT:
        result.server_pk = reader.lp()
        result.provider_name = reader.lp().decode()
    elif proto in (StampProto.DOH, StampProto.TLS, StampProto.DOQ):
        result.hashes = [h for h in reader.vlp() if h]
        result.provider_name = reader.lp().decode()
        if proto == StampProto.DOH:
            result.path = reader.lp().decode()
        if not reader.done:
            result.bootstrap_ips = [ip.decode() for ip in reader.vlp() if ip]
    if not reader.done:
        raise ValueError("invalid stamp (garbage after end)")
    return result


def _url_port(url: SplitResult, address: str) -> Optional[int]:
    try:
        return url.port
    except ValueError as exc:
        raise UpstreamError(f"failed to parse {address}", [exc]) from exc


def _with_port(url: SplitResult, address: str, default: int) -> SplitResult:
    if _url_port(url, address) is None:
        return url._replace(netloc=f"{url.netloc}:{default}")
    return url


def _host_with_port(url: SplitResult, address: str, default: int) -> str:
    return _with_port(url, address, default).netloc.rpartition("@")[2]


def address_to_upstream(address: str, options: Optional[Options] = None) -> Upstream:
    """Build an upstream from an address.

    Accepted forms: "8.8.8.8:53" or "host" (plain DNS), "dns://", "tcp://",
    "tls://", "https://" and "sdns://" (a DNS stamp).
    """
    options = options if options is not None else Options()
    if "://" in address:
        return _url_to_upstream(urlsplit(address), address, options)

    host, port = parse_host_and_port(address)
    return PlainDNS(join_host_port(host, port or "53"), options.timeout)


def _url_to_boot(url: SplitResult, options: Options) -> Bootstrapper:
    if options.server_ip_addrs:
        return new_bootstrapper_resolved(url, options)
    resolvers = [Resolver(boot, options) for boot in options.bootstrap]
    return Bootstrapper(url, options, resolvers or None)


def _url_to_upstream(url: SplitResult, address: str, options: Options) -> Upstream:
    scheme = url.scheme
    if scheme == "sdns":
        return _stamp_to_upstream(address, options)
    if scheme == "dns":
        return PlainDNS(_host_with_port(url, address, 53), options.timeout)
    if scheme == "tcp":
        return PlainDNS(_host_with_port(url, address, 53), options.timeout, prefer_tcp=True)
    if scheme == "tls":
        try:
            boot = _url_to_boot(_with_port(url, address, 853), options)
        except UpstreamError as exc:
            raise UpstreamError("couldn't create tls bootstrapper", [exc]) from exc
        return DNSOverTLS(boot)
    if scheme == "https":
        try:
            boot = _url_to_boot(_with_port(url, address, 443), options)
        except UpstreamError as exc:
            raise UpstreamError("couldn't create tls bootstrapper", [exc]) from exc
        return DNSOverHTTPS(boot)
    raise UpstreamError(f"unsupported URL scheme: {scheme}")


def _stamp_to_upstream(address: str, options: Options) -> Upstream:
    try:
        stamp = parse_stamp(address)
    except ValueError as exc:
        raise UpstreamError(f"failed to parse {address}", [exc]) from exc

    options = dataclasses.replace(options)
    if stamp.server_addr:
        try:
            host, _ = split_host_port(stamp.server_addr)
        except ValueError:
            host = stamp.server_addr
        try:
            ip = ipaddress.ip_address(host)
        except ValueError as exc:
            raise UpstreamError(
                f"invalid server address in the stamp: {stamp.server_addr}"
            ) from exc
        options.server_ip_addrs = [ip]

    if stamp.proto == StampProto.PLAIN:
        return PlainDNS(stamp.server_addr, options.timeout)
    if stamp.proto == StampProto.DOH:
        return address_to_upstream(f"https://{stamp.provider_name}{stamp.path}", options)
    if stamp.proto == StampProto.TLS:
        return address_to_upstream(f"tls://{stamp.provider_name}", options)
    raise UpstreamError(f"unsupported protocol {stamp.proto.name} in {address}")


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def is_resolver_valid_bootstrap(upstream: Upstream) -> bool:
    """Tell whether upstream can serve as a bootstrap DNS server.

    Plain DNS and stamps are fine; DoT and DoH only with an IP address.
    """
    if isinstance(upstream, (DNSOverTLS, DNSOverHTTPS)):
        netloc = urlsplit(upstream.address).netloc.rpartition("@")[2]
        try:
            host, _ = split_host_port(netloc)
        except ValueError:
            if isinstance(upstream, DNSOverTLS):
                return False
            host = netloc
        return _is_ip(host)

    addr = upstream.address
    if addr.startswith("sdns://"):
        return True
    if addr.startswith("tcp://"):
        addr = addr[len("tcp://"):]
    try:
        host, _ = split_host_port(addr)
    except ValueError:
        return False
    return _is_ip(host)


class Resolver:
    """Looks up host addresses, with the system resolver or a DNS upstream."""

    def __init__(self, resolver_address: str = "", options: Optional[Options] = None) -> None:
        self.resolver_address = resolver_address
        self.upstream: Optional[Upstream] = None
        if not resolver_address:
            return

        options = options if options is not None else Options()
        opts = Options(
            timeout=options.timeout,
            verify_server_certificate=options.verify_server_certificate,
        )
        try:
            upstream = address_to_upstream(resolver_address, opts)
        except UpstreamError as exc:
            log.error("AddressToUpstream: %s", exc)
            raise UpstreamError(f"AddressToUpstream: {exc}") from exc

        if not is_resolver_valid_bootstrap(upstream):
            log.error("Resolver %s is not eligible to be a bootstrap DNS server", resolver_address)
            raise UpstreamError(
                f"Resolver {resolver_address} is not eligible to be a bootstrap DNS server"
            )
        self.upstream = upstream

    def _system_lookup(self, host: str) -> list:
        found: list = []
        for info in socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP):
            ip = ipaddress.ip_address(str(info[4][0]).split("%", 1)[0])
            if ip not in found:
                found.append(ip)
        return sort_ip_addrs(found)

    def lookup_ip_addr(self, host: str) -> list:
        """Return host's IPv4 then IPv6 addresses."""
        if not self.resolver_address:
            return self._system_lookup(host)
        if self.upstream is None or not host:
            return []
        if not host.endswith("."):
            host += "."

        results: list = []
        lock = threading.Lock()

        def resolve(rdtype) -> None:
            req = dns.message.make_query(host, rdtype, dns.rdataclass.IN)
            try:
                outcome = (self.upstream.exchange(req), None)
            except Exception as exc:
                outcome = (None, exc)
            with lock:
                results.append(outcome)

        threads = [
            threading.Thread(target=resolve, args=(rdtype,), daemon=True)
            for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        addrs: list = []
        errors: list = []
        for reply, err in results:
            if err is not None:
                errors.append(err)
            elif reply is not None:
                addrs.extend(ips_from_answers(reply.answer))

        if not addrs and errors:
            raise errors[0]
        return sort_ip_addrs(addrs)