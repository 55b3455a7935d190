"""DNS-over-HTTPS upstream."""

from __future__ import annotations

import base64
import http.client
import logging
import socket
import threading
import time
from typing import Optional

import dns.exception
import dns.message

from .upstream_base import Upstream, UpstreamError

log = logging.getLogger(__name__)

_CONTENT_TYPE = "application/dns-message"


class _BootstrappedConnection(http.client.HTTPConnection):
    """An HTTP/1.1 connection dialed through a bootstrapper and wrapped in TLS."""

    def __init__(self, host: str, context, dial, server_name: str, timeout) -> None:
        super().__init__(host, timeout=timeout)
        self._context = context
        self._dial = dial
        self._server_name = server_name

    def connect(self) -> None:
        raw = self._dial("tcp", self.host)
        try:
            raw.settimeout(self.timeout)
            self.sock = self._context.wrap_socket(
                raw, server_hostname=self._server_name or None
            )
        except Exception:
            raw.close()
            raise


class DNSOverHTTPS(Upstream):
    """A DNS-over-HTTPS upstream sending queries as GET requests."""

    def __init__(self, boot) -> None:
        self.boot = boot
        self._client: Optional[_BootstrappedConnection] = None
        self._client_lock = threading.Lock()
        self._request_lock = threading.Lock()

    @property
    def address(self) -> str:
        return self.boot.address

    def _timeout(self) -> Optional[float]:
        timeout = self.boot.options.timeout
        return timeout if timeout and timeout > 0 else None

    def _get_client(self) -> _BootstrappedConnection:
        start = time.monotonic()
        with self._client_lock:
            if self._client is not None:
                return self._client
            # The timeout can run out while waiting for the lock.
            elapsed = time.monotonic() - start
            timeout = self._timeout()
            if timeout is not None and elapsed > timeout:
                raise UpstreamError(f"timeout exceeded: {elapsed:.3f}s")
            try:
                context, dial, server_name = self.boot.get()
            except Exception as exc:
                raise UpstreamError(f"couldn't bootstrap {self.address}", [exc]) from exc
            # http.client speaks HTTP/1.1 only.
            context.set_alpn_protocols(["http/1.1"])
            host = server_name or self.boot.url.hostname or ""
            self._client = _BootstrappedConnection(
                host, context, dial, server_name, self._timeout()
            )
            return self._client

    def _drop_client(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()

    def _target(self, wire: bytes) -> str:
        url = self.boot.url
        target = url.path or "/"
        if url.query:
            target += "?" + url.query
        encoded = base64.urlsafe_b64encode(wire).rstrip(b"=").decode("ascii")
        return f"{target}?dns={encoded}"

    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        start = time.monotonic()
        try:
            client = self._get_client()
        except UpstreamError as exc:
            raise UpstreamError(
                "couldn't initialize HTTP client or transport", [exc]
            ) from exc

        self._log_begin(msg)
        try:
            reply = self._exchange_with(client, msg)
        except Exception as exc:
            self._log_finish(exc)
            raise
        self._log_finish(None)
        log.debug("DoH exchange took %.3fs", time.monotonic() - start)
        return reply

    def _exchange_with(
        self, client: _BootstrappedConnection, msg: dns.message.Message
    ) -> dns.message.Message:
        try:
            wire = msg.to_wire()
        except dns.exception.DNSException as exc:
            raise UpstreamError("couldn't pack request msg", [exc]) from exc

        with self._request_lock:
            try:
                client.request(
                    "GET", self._target(wire), headers={"Accept": _CONTENT_TYPE}
                )
                response = client.getresponse()
                body = response.read()
            except (OSError, http.client.HTTPException) as exc:
                if isinstance(exc, socket.timeout):
                    # Recreate the client after timeouts.
                    self._drop_client()
                else:
                    client.close()
                raise UpstreamError(
                    f"couldn't do a GET request to '{self.address}'", [exc]
                ) from exc

        if response.status != 200:
            raise UpstreamError(
                f"got an unexpected HTTP status code {response.status} from '{self.address}'"
            )
        try:
            reply = dns.message.from_wire(body)
        except dns.exception.DNSException as exc:
            raise UpstreamError(
                f"couldn't unpack DNS response from '{self.address}': body is {body!r}",
                [exc],
            ) from exc
        if reply.id != msg.id:
            raise UpstreamError("dns: id mismatch")
        return reply

    def reset(self) -> None:
        """Drop the HTTP client so that a new one is created."""
        self._drop_client()