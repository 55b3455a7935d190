"""Common pieces of all upstream DNS clients."""

from __future__ import annotations

import abc
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Optional

import dns.message
import dns.rdatatype

log = logging.getLogger(__name__)

_PORT_RE = re.compile(r"[+-]?[0-9]+")


class UpstreamError(Exception):
    """An upstream failed; errors holds the underlying causes, if any."""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.errors = tuple(errors)

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: " + "; ".join(str(err) for err in self.errors)


@dataclass
class Options:
    """Settings used when building upstreams from addresses.

    timeout is in seconds; 0 means no timeout.  bootstrap lists the DNS
    servers used to resolve DoH/DoT host names.  server_ip_addrs, when set,
    makes the bootstrap servers unnecessary.
    """

    bootstrap: list[str] = field(default_factory=list)
    timeout: float = 0.0
    server_ip_addrs: list = field(default_factory=list)
    insecure_skip_verify: bool = False
    verify_server_certificate: Optional[Callable[[bytes], None]] = None


class Upstream(abc.ABC):
    """A DNS resolver that queries can be sent to."""

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """The address this upstream was configured with."""

    @abc.abstractmethod
    def exchange(self, msg: dns.message.Message) -> Optional[dns.message.Message]:
        """Send msg and return the reply."""

    def reset(self) -> None:
        """Drop cached connections; plain upstreams keep none."""

    def __str__(self) -> str:
        return self.address

    def _log_begin(self, msg: dns.message.Message) -> None:
        qtype = target = ""
        if msg.question:
            question = msg.question[0]
            qtype = dns.rdatatype.to_text(question.rdtype)
            target = question.name.to_text()
        log.debug("%s: sending request %s %s", self.address, qtype, target)

    def _log_finish(self, err: Optional[BaseException]) -> None:
        status = "ok" if err is None else str(err)
        log.debug("%s: response: %s", self.address, status)


def split_host_port(addr: str) -> tuple[str, str]:
    """Split "host:port" or "[host]:port"; raise ValueError if malformed."""

    def fail(reason: str) -> ValueError:
        return ValueError(f"address {addr}: {reason}")

    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        host, rest = addr[1:end], addr[end + 1:]
        if not rest.startswith(":"):
            if rest.startswith("]"):
                raise fail("unexpected ']' in address")
            raise fail("missing port in address")
        if "[" in host or "]" in host:
            raise fail("unexpected '[' in address")
        port = rest[1:]
        if ":" in port:
            raise fail("too many colons in address")
        return host, port

    index = addr.rfind(":")
    if index < 0:
        raise fail("missing port in address")
    host, port = addr[:index], addr[index + 1:]
    if ":" in host:
        raise fail("too many colons in address")
    if "[" in host or "]" in host:
        raise fail("unexpected '[' in address")
    return host, port


def join_host_port(host: str, port) -> str:
    """Join host and port, bracketing IPv6 literals."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_host_and_port(addr: str) -> tuple[str, str]:
    """Split addr into host and a validated port; the port may be empty."""
    try:
        host, port = split_host_port(addr)
    except ValueError:
        return addr, ""
    if not _PORT_RE.fullmatch(port) or not 0 < int(port) <= 0xFFFF:
        raise UpstreamError(f"invalid address: {addr}")
    return host, str(int(port))