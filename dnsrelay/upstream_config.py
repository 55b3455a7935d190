"""Choosing upstreams by domain name.

A configuration line is either a plain upstream address, used by default,
or "[/domain1/../domainN/]address", reserving the upstream for those
domains and their subdomains.  More specific domains win over less
specific ones, and "[/domain/]#" sends a domain back to the default
upstreams.  An empty domain, as in "[//]address", stands for unqualified
names.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from .upstream_base import Options, Upstream, UpstreamError
from .upstreams import address_to_upstream

log = logging.getLogger(__name__)

# The key under which upstreams for unqualified names are reserved.
UNQUALIFIED_NAMES = "unqualified_names"

MAX_DOMAIN_NAME_LEN = 253
MAX_DOMAIN_LABEL_LEN = 63

_ALNUM = frozenset(string.ascii_letters + string.digits)
_LABEL_CHARS = _ALNUM | {"-"}


def _validate_label(label: str, name: str) -> None:
    if not label:
        raise ValueError(f"bad domain name {name!r}: empty label")
    if len(label) > MAX_DOMAIN_LABEL_LEN:
        raise ValueError(
            f"bad domain name {name!r}: label {label!r} is longer than "
            f"{MAX_DOMAIN_LABEL_LEN} characters"
        )
    if label[0] not in _ALNUM:
        raise ValueError(
            f"bad domain name {name!r}: label {label!r} must start with a letter or digit"
        )
    bad = next((ch for ch in label if ch not in _LABEL_CHARS), None)
    if bad is not None:
        raise ValueError(
            f"bad domain name {name!r}: bad character {bad!r} in label {label!r}"
        )
    if label[-1] == "-":
        raise ValueError(
            f"bad domain name {name!r}: label {label!r} must not end with a hyphen"
        )


def validate_domain_name(name: str) -> str:
    """Check a domain name and return its ASCII form; raise ValueError if bad."""
    ascii_name = name
    if not name.isascii():
        try:
            ascii_name = name.encode("idna").decode("ascii")
        except UnicodeError as exc:
            raise ValueError(f"bad domain name {name!r}: {exc}") from exc

    if not ascii_name:
        raise ValueError("bad domain name '': empty name")
    if len(ascii_name) > MAX_DOMAIN_NAME_LEN:
        raise ValueError(
            f"bad domain name {name!r}: longer than {MAX_DOMAIN_NAME_LEN} characters"
        )
    for label in ascii_name.split("."):
        _validate_label(label, name)
    return ascii_name


def parse_upstream_line(line: str) -> tuple[str, list[str]]:
    """Split a configuration line into the upstream address and its domains.

    The domains are lower-cased and fully qualified; the list is empty for
    a default upstream.
    """
    hosts: list[str] = []
    address = line

    if line.startswith("[/"):
        parts = line[len("[/"):].split("/]")
        if len(parts) != 2:
            raise ValueError(f"wrong upstream specification: {line}")
        domains, address = parts
        for host in domains.split("/"):
            if host:
                validate_domain_name(host)
                hosts.append((host + ".").lower())
            else:
                hosts.append(UNQUALIFIED_NAMES)

    return address, hosts


@dataclass
class UpstreamConfig:
    """Default upstreams and the upstreams reserved for particular domains.

    A reserved entry that is None or empty marks a domain excluded from
    reservation, which is served by the default upstreams.
    """

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, Optional[list[Upstream]]] = field(
        default_factory=dict
    )

    def upstreams_for_domain(self, host: str) -> list[Upstream]:
        """Return the upstreams for host, the most specific reservation first."""
        if not self.domain_reserved_upstreams:
            return self.upstreams

        dots = host.count(".")
        host = UNQUALIFIED_NAMES if dots < 2 else host.lower()

        for skipped in range(dots):
            name = host.split(".", skipped)[-1]
            if name not in self.domain_reserved_upstreams:
                continue
            reserved = self.domain_reserved_upstreams[name]
            if not reserved:
                # The domain has been excluded from reserved upstreams.
                return self.upstreams
            return reserved

        return self.upstreams


def parse_upstreams_config(
    lines: Iterable[str], options: Optional[Options] = None
) -> UpstreamConfig:
    """Build an UpstreamConfig from configuration lines.

    The same address used on several lines yields one shared upstream.
    """
    options = options if options is not None else Options()
    if options.bootstrap:
        log.debug("Bootstraps: %s", options.bootstrap)

    upstreams: list[Upstream] = []
    reserved: dict[str, Optional[list[Upstream]]] = {}
    index: dict[str, Upstream] = {}

    for number, line in enumerate(lines):
        address, hosts = parse_upstream_line(line)

        if address == "#" and hosts:
            for host in hosts:
                reserved[host] = None
            continue

        upstream = index.get(address)
        if upstream is None:
            try:
                upstream = address_to_upstream(
                    address,
                    Options(
                        bootstrap=list(options.bootstrap),
                        timeout=options.timeout,
                        insecure_skip_verify=options.insecure_skip_verify,
                    ),
                )
            except (UpstreamError, ValueError) as exc:
                raise UpstreamError(
                    f"cannot prepare the upstream {line} ({options.bootstrap}): {exc}"
                ) from exc
            index[address] = upstream

        if hosts:
            for host in hosts:
                bucket = reserved.get(host) or []
                bucket.append(upstream)
                reserved[host] = bucket
            log.debug(
                "Upstream %d: %s is reserved for next domains: %s",
                number, upstream.address, ", ".join(hosts),
            )
        else:
            log.debug("Upstream %d: %s", number, upstream.address)
            upstreams.append(upstream)

    return UpstreamConfig(upstreams=upstreams, domain_reserved_upstreams=reserved)