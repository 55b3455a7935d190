"""Helpers shared by the proxy and the upstream clients."""

from __future__ import annotations

import errno
import ipaddress
import socket
import struct
from collections.abc import Iterable
from typing import Optional, Union

import dns.message
import dns.rdatatype

MAX_MSG_SIZE = 65535
MIN_MSG_SIZE = 512

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_CLOSED_ERRNOS = {errno.EBADF, getattr(errno, "ENOTSOCK", errno.EBADF)}
_WSAENOTSOCK = 10038


class MessageTooLargeError(ValueError):
    """A DNS message does not fit into 64 KiB."""

    def __init__(self, message: str = "DNS message is too large") -> None:
        super().__init__(message)


def dns_size(is_udp: bool, msg: dns.message.Message) -> int:
    """Return the response size the client can take.

    Over TCP that is the protocol maximum; over UDP it is the buffer size
    advertised in the OPT record, never less than the classic 512 bytes.
    """
    size = msg.payload if msg.edns >= 0 else 0
    if not is_udp:
        return MAX_MSG_SIZE
    if size < MIN_MSG_SIZE:
        return MIN_MSG_SIZE
    return size


def _recv_exactly(sock: socket.socket, count: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < count:
        chunk = sock.recv(count - len(chunks))
        if not chunk:
            raise EOFError(
                f"connection closed after {len(chunks)} of {count} bytes"
            )
        chunks += chunk
    return bytes(chunks)


def read_prefixed(sock: socket.socket) -> bytes:
    """Read one DNS message preceded by its 2-byte big-endian length."""
    (length,) = struct.unpack("!H", _recv_exactly(sock, 2))
    return _recv_exactly(sock, length)


def write_prefixed(data: bytes, sock: socket.socket) -> None:
    """Write a DNS message preceded by its 2-byte big-endian length."""
    if len(data) > MAX_MSG_SIZE:
        raise MessageTooLargeError()
    sock.sendall(struct.pack("!H", len(data)) + bytes(data))


def is_conn_closed(err: Optional[BaseException]) -> bool:
    """Tell whether an error comes from using an already closed socket."""
    if not isinstance(err, OSError):
        return False
    if err.errno in _CLOSED_ERRNOS:
        return True
    if getattr(err, "winerror", None) == _WSAENOTSOCK:
        return True
    return "use of closed network connection" in str(err)


def ip_from_record(rr) -> Optional[IPAddress]:
    """Return the address of an A or AAAA record, or None for other types."""
    if getattr(rr, "rdtype", None) in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return ipaddress.ip_address(rr.address)
    return None


def _canonical(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _coerce(ip) -> Optional[IPAddress]:
    if ip is None:
        return None
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    try:
        return ipaddress.ip_address(ip)
    except ValueError:
        return None


def contains_ip(ips: Iterable, ip) -> bool:
    """Tell whether ip is among ips; IPv4 and IPv4-mapped IPv6 compare equal."""
    target = _coerce(ip)
    if target is None:
        return False
    target = _canonical(target)
    for candidate in ips:
        parsed = _coerce(candidate)
        if parsed is not None and _canonical(parsed) == target:
            return True
    return False


def ips_from_answers(answers: Iterable) -> list[IPAddress]:
    """Collect the addresses of all A and AAAA records in answer RRsets."""
    return [
        ip
        for rrset in answers
        for rr in rrset
        if (ip := ip_from_record(rr)) is not None
    ]


def sort_ip_addrs(ip_addrs: Iterable[IPAddress]) -> list[IPAddress]:
    """Sort addresses: IPv4 first, then IPv6, each in byte order."""

    def key(ip: IPAddress) -> tuple[int, bytes]:
        canon = _canonical(ip)
        return (0 if canon.version == 4 else 1, canon.packed)

    return sorted(ip_addrs, key=key)