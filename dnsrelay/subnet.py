"""Checking addresses against a set of IP networks."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from typing import Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_ip_as_cidr(ip_str: str) -> Optional[IPNetwork]:
    """Return a single-address network for an IP string, or None if invalid."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return None
    return ipaddress.ip_network((ip, ip.max_prefixlen))


def _canonical(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class SubnetDetector:
    """A set of networks; each entry may be a CIDR or a bare IP address."""

    def __init__(self, nets: Iterable[str]) -> None:
        self.nets: list[IPNetwork] = []
        for index, text in enumerate(nets):
            try:
                network = ipaddress.ip_network(text, strict=False)
            except ValueError as exc:
                network = parse_ip_as_cidr(text)
                if network is None:
                    raise ValueError(
                        f"bad CIDR or IP at index {index}: {exc}"
                    ) from exc
            self.nets.append(network)

    def detect(self, ip) -> bool:
        """Tell whether ip lies in any of the networks."""
        if ip is None:
            return False
        if not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            ip = ipaddress.ip_address(ip)
        ip = _canonical(ip)
        return any(ip in network for network in self.nets)