"""DNS-over-TLS upstream with a pool of reusable connections."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import dns.exception
import dns.message

from .proxyutil import read_prefixed, write_prefixed
from .upstream_base import Upstream, UpstreamError

log = logging.getLogger(__name__)

DIAL_TIMEOUT = 10.0


def tls_dial(dial, context, server_name: str):
    """Open a connection with dial and complete a TLS handshake over it.

    The dial timeout covers both the TCP connection and the handshake.
    """
    raw = dial("tcp", "")
    try:
        raw.settimeout(DIAL_TIMEOUT)
        conn = context.wrap_socket(
            raw, server_hostname=server_name or None, do_handshake_on_connect=False
        )
    except Exception:
        raw.close()
        raise

    start = time.monotonic()
    try:
        conn.do_handshake()
    except Exception:
        conn.close()
        raise
    log.debug("TLS handshake took %.3fs", time.monotonic() - start)
    return conn


class TLSPool:
    """A pool of TLS connections to one DNS-over-TLS server."""

    def __init__(self, boot) -> None:
        self.boot = boot
        self.conns: list = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self.conns)

    def get(self):
        """Return a pooled connection that is still open, or a new one."""
        with self._lock:
            conn = self.conns.pop() if self.conns else None

        if conn is not None:
            try:
                if conn.fileno() < 0:
                    raise OSError("connection is closed")
                conn.settimeout(DIAL_TIMEOUT)
            except OSError:
                pass
            else:
                log.debug("Returning existing pooled connection")
                return conn

        return self.create()

    def create(self):
        """Open a new connection without putting it into the pool."""
        context, dial, server_name = self.boot.get()
        try:
            conn = tls_dial(dial, context, server_name)
        except Exception as exc:
            raise UpstreamError(f"Failed to connect to {server_name}", [exc]) from exc

        verify = getattr(getattr(self.boot, "options", None), "verify_server_certificate", None)
        if verify is not None:
            try:
                verify(conn.getpeercert(binary_form=True))
            except Exception:
                conn.close()
                raise
        return conn

    def put(self, conn) -> None:
        """Return a connection to the pool."""
        if conn is None:
            return
        with self._lock:
            self.conns.append(conn)


class DNSOverTLS(Upstream):
    """A DNS-over-TLS upstream."""

    def __init__(self, boot) -> None:
        self.boot = boot
        self.pool: Optional[TLSPool] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return self.boot.address

    def _get_pool(self) -> TLSPool:
        with self._lock:
            if self.pool is None:
                self.pool = TLSPool(self.boot)
            return self.pool

    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        start = time.monotonic()
        pool = self._get_pool()
        try:
            conn = pool.get()
        except Exception as exc:
            raise UpstreamError(
                f"Failed to get a connection from TLSPool to {self.address}", [exc]
            ) from exc

        self._log_begin(msg)
        try:
            reply = self.exchange_conn(conn, msg)
        except UpstreamError as first:
            self._log_finish(first)
            log.debug("The TLS connection is expired due to %s", first)
            conn.close()
            # The pooled connection may have been closed by the server; other
            # pooled connections may be stale too, so dial a fresh one.
            try:
                conn = pool.create()
            except Exception as exc:
                raise UpstreamError(
                    f"Failed to create a new connection from TLSPool to {self.address}",
                    [exc],
                ) from exc
            self._log_begin(msg)
            try:
                reply = self.exchange_conn(conn, msg)
            except UpstreamError as exc:
                self._log_finish(exc)
                raise
        self._log_finish(None)

        with self._lock:
            current = self.pool
        if current is not None:
            current.put(conn)
        log.debug("DoT exchange took %.3fs", time.monotonic() - start)
        return reply

    def reset(self) -> None:
        """Forget the pool so that new connections are made."""
        with self._lock:
            self.pool = None

    def exchange_conn(self, conn, msg: dns.message.Message) -> dns.message.Message:
        """Send msg over conn and read the reply; conn is closed on I/O errors."""
        try:
            write_prefixed(msg.to_wire(), conn)
        except (OSError, ValueError, dns.exception.DNSException) as exc:
            conn.close()
            raise UpstreamError(f"Failed to send a request to {self.address}", [exc]) from exc

        try:
            reply = dns.message.from_wire(read_prefixed(conn))
        except (OSError, EOFError, dns.exception.DNSException) as exc:
            conn.close()
            raise UpstreamError(f"Failed to read a request from {self.address}", [exc]) from exc

        if reply.id != msg.id:
            raise UpstreamError("dns: id mismatch")
        return reply