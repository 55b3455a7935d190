"""Building error responses to DNS queries."""

from __future__ import annotations

import dns.flags
import dns.message
import dns.opcode
import dns.rcode

# Advertised UDP payload size in NOTIMP responses.
NOT_IMPL_EDNS_PAYLOAD = 1452


def gen_with_rcode(request: dns.message.Message, rcode: int) -> dns.message.Message:
    """Return a reply to request carrying rcode, with recursion available."""
    resp = dns.message.Message(id=request.id)
    opcode = request.opcode()
    flags = dns.flags.QR | dns.flags.RA
    if opcode == dns.opcode.QUERY:
        flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    resp.flags = flags
    resp.set_opcode(opcode)
    resp.question = list(request.question[:1])
    resp.set_rcode(rcode)
    return resp


def gen_server_failure(request: dns.message.Message) -> dns.message.Message:
    """Return a SERVFAIL reply to request."""
    return gen_with_rcode(request, dns.rcode.SERVFAIL)


def gen_not_impl(request: dns.message.Message) -> dns.message.Message:
    """Return a NOTIMP reply to request.

    NOTIMP without EDNS reads as "EDNS is not supported", so EDNS is set.
    """
    resp = gen_with_rcode(request, dns.rcode.NOTIMP)
    resp.use_edns(0, 0, NOT_IMPL_EDNS_PAYLOAD)
    return resp