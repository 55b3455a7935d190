"""Querying several upstreams or resolvers at once."""

from __future__ import annotations

import copy
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional

import dns.message

from .upstream_base import Upstream, UpstreamError

log = logging.getLogger(__name__)


class NoUpstreamsError(UpstreamError):
    """No upstream was given to work with."""

    def __init__(self, message: str = "no upstream specified") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ExchangeAllResult:
    """A reply together with the upstream that sent it."""

    resp: dns.message.Message
    upstream: Upstream


@dataclass(frozen=True)
class _Outcome:
    source: Any
    value: Any = None
    error: Optional[BaseException] = None


def _start(sources: list, work: Callable[[Any], Any]) -> "queue.Queue[_Outcome]":
    results: "queue.Queue[_Outcome]" = queue.Queue()

    def run(source) -> None:
        try:
            results.put(_Outcome(source, value=work(source)))
        except Exception as exc:
            results.put(_Outcome(source, error=exc))

    for source in sources:
        threading.Thread(target=run, args=(source,), daemon=True).start()
    return results


def _exchange(upstream: Upstream, req: dns.message.Message):
    question = str(req.question[0]) if req.question else ""
    start = time.monotonic()
    try:
        reply = upstream.exchange(req)
    except Exception as exc:
        log.debug(
            "upstream %s failed to exchange %s in %.3fs. Cause: %s",
            upstream.address, question, time.monotonic() - start, exc,
        )
        raise
    log.debug(
        "upstream %s successfully finished exchange of %s. Elapsed %.3fs.",
        upstream.address, question, time.monotonic() - start,
    )
    return reply


def exchange_parallel(
    upstreams: Iterable[Upstream], req: dns.message.Message
) -> tuple[Optional[dns.message.Message], Upstream]:
    """Send req to all upstreams at once; return the first reply and its sender."""
    ups = list(upstreams)
    if not ups:
        raise NoUpstreamsError()
    if len(ups) == 1:
        return _exchange(ups[0], req), ups[0]

    results = _start(ups, lambda u: u.exchange(copy.deepcopy(req)))
    errors: list[BaseException] = []
    for _ in ups:
        outcome = results.get()
        if outcome.error is not None:
            errors.append(outcome.error)
        elif outcome.value is not None:
            return outcome.value, outcome.source

    if not errors:
        raise UpstreamError("none of upstream servers responded")
    raise UpstreamError("all upstreams failed to respond", errors)


def exchange_all(
    upstreams: Iterable[Upstream], req: dns.message.Message
) -> list[ExchangeAllResult]:
    """Collect a reply from each upstream, in the order they arrive."""
    ups = list(upstreams)
    if not ups:
        raise NoUpstreamsError()

    results = _start(ups, lambda u: u.exchange(copy.deepcopy(req)))
    replies: list[ExchangeAllResult] = []
    errors: list[BaseException] = []
    for _ in ups:
        outcome = results.get()
        if outcome.error is not None:
            errors.append(outcome.error)
        elif outcome.value is None:
            errors.append(UpstreamError("no reply"))
        else:
            replies.append(ExchangeAllResult(outcome.value, outcome.source))

    if len(errors) == len(ups):
        raise UpstreamError("all upstreams failed to exchange", errors)
    return replies


def _lookup(resolver, host: str):
    name = getattr(resolver, "resolver_address", "")
    start = time.monotonic()
    try:
        addrs = resolver.lookup_ip_addr(host)
    except Exception as exc:
        log.debug(
            "failed to lookup for %s in %.3fs using %s: %s",
            host, time.monotonic() - start, name, exc,
        )
        raise
    log.debug(
        "successfully finished lookup for %s in %.3fs using %s. Result : %s",
        host, time.monotonic() - start, name, addrs,
    )
    return addrs


def lookup_parallel(resolvers: Iterable, host: str, timeout: Optional[float] = None) -> list:
    """Look host up with all resolvers at once; return the first success.

    Each resolver needs a lookup_ip_addr(host) method.  timeout, in
    seconds, bounds the wait; None or 0 waits without a limit.
    """
    pool = list(resolvers)
    if not pool:
        raise UpstreamError("no resolvers specified")

    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    results = _start(pool, lambda r: _lookup(r, host))
    errors: list[BaseException] = []
    for _ in pool:
        try:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            outcome = results.get(timeout=remaining)
        except queue.Empty:
            expired = TimeoutError(f"lookup of {host} timed out")
            if len(pool) == 1:
                raise expired from None
            errors.append(expired)
            break
        if outcome.error is None:
            return outcome.value
        if len(pool) == 1:
            raise outcome.error
        errors.append(outcome.error)

    raise UpstreamError("all resolvers failed to lookup", errors)