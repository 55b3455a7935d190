"""Resolving upstream host names and preparing connections to them."""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import threading
import time
from collections.abc import Callable, Iterable
from typing import NamedTuple, Optional, Union
from urllib.parse import SplitResult, urlsplit

from .parallel import lookup_parallel
from .proxyutil import sort_ip_addrs
from .upstream_base import Options, UpstreamError, join_host_port, split_host_port

log = logging.getLogger(__name__)

# ALPN token for DNS-over-QUIC, latest draft first, then older drafts.
NEXT_PROTO_DQ = "doq-i02"
COMPAT_PROTO_DQ = (NEXT_PROTO_DQ, "doq-i00", "dq", "doq")

# Registered ALPN for DNS-over-TLS; not advertised, most clients send none.
NEXT_PROTO_DOT = "dot"

_HTTP_PROTOS = ("h2", "http/1.1")

Dialer = Callable[..., socket.socket]


class _ClientContext(ssl.SSLContext):
    """A client TLS context that remembers the server name it is meant for."""

    server_name: str = ""


class _Resolved(NamedTuple):
    context: ssl.SSLContext
    dial: Dialer
    server_name: str


class _SystemResolver:
    """Looks names up with the operating system's resolver."""

    resolver_address = ""

    def lookup_ip_addr(self, host: str) -> list:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        found: list = []
        for info in infos:
            ip = ipaddress.ip_address(str(info[4][0]).split("%", 1)[0])
            if ip not in found:
                found.append(ip)
        return sort_ip_addrs(found)


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _connect(network: str, target: str, timeout: Optional[float]) -> socket.socket:
    host, port_text = split_host_port(target)
    port = int(port_text)
    if network.startswith("udp"):
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.settimeout(timeout)
            sock.connect((host, port))
        except OSError:
            sock.close()
            raise
        return sock
    return socket.create_connection((host, port), timeout=timeout)


class Bootstrapper:
    """Turns an upstream URL into a TLS context and a dialer.

    The host of the URL is resolved once, with the given resolvers (each
    providing lookup_ip_addr(host)), or with the system resolver when none
    are given; the result is cached.
    """

    def __init__(
        self,
        url: Union[str, SplitResult],
        options: Optional[Options] = None,
        resolvers: Optional[Iterable] = None,
    ) -> None:
        self.url = urlsplit(url) if isinstance(url, str) else url
        self.options = options if options is not None else Options()
        resolver_list = list(resolvers) if resolvers is not None else []
        self.resolvers = resolver_list or [_SystemResolver()]
        self._resolved: Optional[_Resolved] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        """The upstream URL as a string."""
        return self.url.geturl()

    def _host_port(self) -> str:
        return self.url.netloc.rpartition("@")[2]

    def _timeout(self) -> Optional[float]:
        timeout = self.options.timeout
        return timeout if timeout and timeout > 0 else None

    def _store(self, addresses: list[str], host: str) -> _Resolved:
        with self._lock:
            self._resolved = _Resolved(
                self.create_tls_context(host), self.create_dialer(addresses), host
            )
            return self._resolved

    def get(self) -> _Resolved:
        """Return (tls context, dialer, server name), resolving the host if needed."""
        with self._lock:
            if self._resolved is not None:
                return self._resolved

        try:
            host, port = split_host_port(self._host_port())
        except ValueError as exc:
            raise UpstreamError(
                f"bootstrapper requires port in address {self.address}"
            ) from exc

        if _is_ip(host):
            return self._store([join_host_port(host, port)], host)

        # Lookups run without holding the lock so that a slow bootstrap
        # server does not stall other callers past their own timeout.
        try:
            addrs = lookup_parallel(self.resolvers, host, self._timeout())
        except Exception as exc:
            raise UpstreamError(f"failed to lookup {host}", [exc]) from exc

        resolved = [join_host_port(str(ip), port) for ip in addrs]
        if not resolved:
            raise UpstreamError(
                f"couldn't find any suitable IP address for host {host}"
            )
        return self._store(resolved, host)

    def create_tls_context(self, host: str) -> ssl.SSLContext:
        """Build the client TLS context for connections to host."""
        context = _ClientContext(ssl.PROTOCOL_TLS_CLIENT)
        context.server_name = host
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if self.options.insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.load_default_certs()

        # The advertised ALPN depends on the URL scheme.
        if self.url.scheme == "https":
            context.set_alpn_protocols(list(_HTTP_PROTOS))
        elif self.url.scheme == "quic":
            context.set_alpn_protocols(list(COMPAT_PROTO_DQ))
        return context

    def create_dialer(self, addresses: Iterable[str]) -> Dialer:
        """Return dial(network="tcp", addr="") trying addresses in order.

        The addr argument is only used for logging: the connection always
        goes to one of the bootstrapped addresses.
        """
        targets = list(addresses)
        timeout = self._timeout()

        def dial(network: str = "tcp", addr: str = "") -> socket.socket:
            if addr:
                log.debug("Establishing new connection for %s", addr)
            errors: list[BaseException] = []
            for target in targets:
                start = time.monotonic()
                try:
                    conn = _connect(network, target, timeout)
                except (OSError, ValueError) as exc:
                    errors.append(exc)
                    log.debug(
                        "dialer failed to initialize connection to %s, in %.3fs, cause: %s",
                        target, time.monotonic() - start, exc,
                    )
                    continue
                log.debug(
                    "dialer has successfully initialized connection to %s in %.3fs",
                    target, time.monotonic() - start,
                )
                return conn
            raise UpstreamError("all dialers failed to initialize connection", errors)

        return dial


def new_bootstrapper_resolved(
    url: Union[str, SplitResult], options: Optional[Options] = None
) -> Bootstrapper:
    """Create a bootstrapper whose addresses come from options.server_ip_addrs."""
    options = options if options is not None else Options()
    boot = Bootstrapper(url, options)
    try:
        host, port = split_host_port(boot._host_port())
    except ValueError as exc:
        raise UpstreamError(
            f"bootstrapper requires port in address {boot.address}"
        ) from exc

    addresses = [join_host_port(str(ip), port) for ip in options.server_ip_addrs]
    boot._store(addresses, host)
    return boot