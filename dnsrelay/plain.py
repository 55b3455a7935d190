"""Plain DNS upstream over UDP or TCP."""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from typing import Optional

import dns.flags
import dns.message
import dns.query

from .upstream_base import Upstream, split_host_port

log = logging.getLogger(__name__)


class PlainDNS(Upstream):
    """A plain DNS server; UDP by default, retrying over TCP on truncation."""

    def __init__(self, address: str, timeout: float = 0.0, prefer_tcp: bool = False) -> None:
        self._address = address
        self.timeout = timeout
        self.prefer_tcp = prefer_tcp

    @property
    def address(self) -> str:
        """The configured address, not the resolved one."""
        if self.prefer_tcp:
            return "tcp://" + self._address
        return self._address

    def _target(self, proto: int) -> tuple[str, int]:
        host, port_text = split_host_port(self._address)
        port = int(port_text)
        try:
            ipaddress.ip_address(host)
            return host, port
        except ValueError:
            infos = socket.getaddrinfo(host, port, proto=proto)
            return infos[0][4][0], port

    def _query_timeout(self) -> Optional[float]:
        return self.timeout if self.timeout and self.timeout > 0 else None

    def _run(self, msg: dns.message.Message, use_tcp: bool) -> dns.message.Message:
        label = "DoTCP" if use_tcp else "DoUDP"
        question = str(msg.question[0]) if msg.question else ""
        self._log_begin(msg)
        start = time.monotonic()
        try:
            if use_tcp:
                where, port = self._target(socket.IPPROTO_TCP)
                reply = dns.query.tcp(msg, where, timeout=self._query_timeout(), port=port)
            else:
                where, port = self._target(socket.IPPROTO_UDP)
                reply = dns.query.udp(msg, where, timeout=self._query_timeout(), port=port)
        except Exception as exc:
            self._log_finish(exc)
            raise
        log.debug(
            "%s exchange for [%s] took %.3fs", label, question, time.monotonic() - start
        )
        self._log_finish(None)
        return reply

    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        if self.prefer_tcp:
            return self._run(msg, use_tcp=True)

        reply = self._run(msg, use_tcp=False)
        if reply is not None and reply.flags & dns.flags.TC:
            log.debug(
                "Truncated message was received, retrying over TCP, question: %s",
                msg.question[0] if msg.question else "",
            )
            reply = self._run(msg, use_tcp=True)
        return reply

    def reset(self) -> None:
        """Plain DNS keeps no connections."""