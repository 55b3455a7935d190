"""Working out the real client address of a DNS-over-HTTPS request."""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional, Union

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_REAL_IP_HEADERS = (
    # Headers set by CloudFlare proxy servers.
    "CF-Connecting-IP",
    "True-Client-IP",
    # Other proxying headers.
    "X-Real-IP",
)

_PORT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class Addr:
    """A TCP endpoint: an IP address and a port."""

    ip: IPAddress
    port: int = 0

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def ip_from_addr(addr) -> Optional[IPAddress]:
    """Return the IP of an Addr, or None for anything else."""
    if isinstance(addr, Addr):
        return addr.ip
    return None


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError:
        return None


def _lower_headers(headers) -> dict[str, str]:
    if headers is None:
        return {}
    lowered: dict[str, str] = {}
    for name, value in headers.items():
        lowered.setdefault(name.lower(), value)
    return lowered


def real_ip_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[IPAddress]:
    """Extract the client IP from proxy headers, or None if there is none.

    Headers are tried in order: CF-Connecting-IP, True-Client-IP,
    X-Real-IP, then the first entry of X-Forwarded-For.
    """
    lowered = _lower_headers(headers)
    for name in _REAL_IP_HEADERS:
        ip = _parse_ip(lowered.get(name.lower(), ""))
        if ip is not None:
            return ip

    xff = lowered.get("x-forwarded-for", "")
    return _parse_ip(xff.split(",", 1)[0])


def _split_host_port(hostport: str) -> tuple[str, str]:
    def fail(reason: str) -> ValueError:
        return ValueError(f"address {hostport}: {reason}")

    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest:
            raise fail("missing port in address")
        if not rest.startswith(":"):
            raise fail("unexpected ']' in address" if rest.startswith("]") else "missing port in address")
        if "[" in host or "]" in host:
            raise fail("unexpected '[' in address")
        return host, rest[1:]

    index = hostport.rfind(":")
    if index < 0:
        raise fail("missing port in address")
    host, port = hostport[:index], hostport[index + 1:]
    if ":" in host:
        raise fail("too many colons in address")
    if "[" in host or "]" in host:
        raise fail("unexpected '[' in address")
    return host, port


def remote_addr(
    remote: str, headers: Optional[Mapping[str, str]] = None
) -> tuple[Addr, Optional[Addr]]:
    """Return the client address and, if proxied, the last proxy's address.

    remote is the peer's "host:port"; raises ValueError when it is malformed.
    """
    host_str, port_str = _split_host_port(remote)

    if not _PORT_RE.fullmatch(port_str):
        raise ValueError(f'invalid port "{port_str}"')
    port = int(port_str)

    host = _parse_ip(host_str)
    if host is None or host_str != host_str.strip():
        raise ValueError(f"invalid ip: {host_str}")

    real_ip = real_ip_from_headers(headers)
    if real_ip is not None:
        log.debug("Using IP address from HTTP request: %s", real_ip)
        return Addr(real_ip, 0), Addr(host, port)

    return Addr(host, port), None