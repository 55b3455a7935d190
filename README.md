# dnsrelay

`dnsrelay` is a library of building blocks for DNS forwarders. It is built on
`dnspython` and has these parts:

- **Upstreams** (`dnsrelay.upstreams.address_to_upstream`): clients for plain
  DNS over UDP or TCP, DNS-over-TLS and DNS-over-HTTPS, created from an
  address string.
- **Bootstrapping** (`dnsrelay.bootstrap.Bootstrapper`): resolves the host
  name of an encrypted upstream through bootstrap resolvers that you choose.
- **Parallel queries** (`dnsrelay.parallel`): send a query to several
  upstreams at once.
- **Per-domain routing** (`dnsrelay.upstream_config`): choose upstreams by
  query name.
- **Helpers**: DoH client-address detection, trusted-proxy subnets,
  length-prefixed TCP framing, error responses and a concurrency limiter.

## Installation

```
pip install dnsrelay
```

## Creating an upstream

```python
import dns.message
from dnsrelay.upstreams import address_to_upstream
from dnsrelay.upstream_base import Options

upstream = address_to_upstream("tls://1.1.1.1", Options(timeout=5.0))
query = dns.message.make_query("example.org.", "A")
reply = upstream.exchange(query)
print(upstream.address, reply.answer)
```

`address_to_upstream` accepts these forms:

| Address                          | Upstream                                       |
|----------------------------------|------------------------------------------------|
| `8.8.8.8` or `8.8.8.8:53`        | `PlainDNS` over UDP, port 53 by default         |
| `dns://8.8.8.8`                  | `PlainDNS` over UDP                             |
| `tcp://8.8.8.8`                  | `PlainDNS` over TCP (address `tcp://8.8.8.8:53`) |
| `tls://dns.example`              | `DNSOverTLS`, port 853 by default               |
| `https://dns.example/dns-query`  | `DNSOverHTTPS`, port 443 by default             |
| `sdns://...`                     | DNS stamp for plain DNS, DoH or DoT             |

Any other scheme raises `UpstreamError`. So does a port that is out of range.

A plain DNS upstream uses UDP. If the reply is truncated, it asks again over
TCP. `DNSOverTLS` keeps a pool of TLS connections (`TLSPool`). If a pooled
connection fails, it retries once on a fresh connection. `DNSOverHTTPS`
sends queries as HTTP/1.1 GET requests with the `dns` query parameter. Both
check that the reply ID matches the query ID.

`dnsrelay.upstream_base.Options` has these fields:

- `bootstrap`: addresses of the bootstrap resolvers.
- `timeout`: in seconds; `0` means no timeout.
- `server_ip_addrs`: fixed addresses for the server. When it is set, the
  bootstrap resolvers are not used.
- `insecure_skip_verify`: skip certificate checks.
- `verify_server_certificate`: a callback that receives the server's DER
  certificate on new DNS-over-TLS connections.

### Bootstrap resolvers

The host name in a `tls://` or `https://` address is resolved with one
`dnsrelay.upstreams.Resolver` per entry in `Options.bootstrap`. The first
lookup that succeeds is used. If the list is empty, the system resolver
does the lookup.

A bootstrap entry must be usable without bootstrapping itself. That means
plain DNS with an IP address, a `tcp://` address with an IP, a stamp, or
DoT or DoH with an IP address. Anything else raises `UpstreamError`
(`is_resolver_valid_bootstrap` performs the check). Results list IPv4
addresses first, then IPv6.

### DNS stamps

`dnsrelay.upstreams.parse_stamp` decodes any `sdns://` stamp into a
`ServerStamp`. Only plain DNS, DoH and DoT stamps can be turned into
upstreams. DNSCrypt and DNS-over-QUIC stamps are rejected with
`UpstreamError`.

## Routing by domain

```python
from dnsrelay.upstream_config import parse_upstreams_config
from dnsrelay.upstream_base import Options

config = parse_upstreams_config(
    [
        "[/example.org/]1.2.3.4",
        "[/internal.example.org/]#",
        "8.8.8.8",
    ],
    Options(timeout=1.0),
)
for upstream in config.upstreams_for_domain("www.example.org."):
    print(upstream.address)   # 1.2.3.4:53
```

- Lines without a `[/.../]` prefix become default upstreams.
- The most specific reserved domain wins.
- `#` sends a domain back to the default upstreams.
- An empty domain (`[//]`) matches names with fewer than two dots.
- Domains are checked with `validate_domain_name`.
- Lines with the same address share one upstream instance.

## Parallel queries

```python
from dnsrelay.parallel import exchange_parallel, exchange_all

reply, upstream = exchange_parallel(upstreams, query)
for result in exchange_all(upstreams, query):
    print(result.upstream.address, result.resp.rcode())
```

`exchange_parallel` returns the first successful reply and the upstream that
sent it. `exchange_all` returns an `ExchangeAllResult` for every upstream
that answered, in arrival order.

Both raise `NoUpstreamsError` for an empty list. They raise `UpstreamError`
when every upstream fails. `lookup_parallel(resolvers, host, timeout)` does
the same kind of race for address lookups.

## Helpers

- `dnsrelay.realip`:
  - `remote_addr(remote, headers)` returns the client `Addr` and, if the
    request was proxied, the proxy's `Addr`.
  - `real_ip_from_headers` reads `CF-Connecting-IP`, `True-Client-IP`,
    `X-Real-IP` and then the first `X-Forwarded-For` entry.
- `dnsrelay.subnet.SubnetDetector`: a set of CIDRs or bare IPs.
  `detect(ip)` reports whether `ip` is in any of them, for example to
  check for trusted proxies.
- `dnsrelay.proxyutil`:
  - `read_prefixed` and `write_prefixed` handle DNS-over-TCP
    length-prefixed framing.
  - `dns_size` gives the response size allowed for a request.
  - There are also IP helpers: `sort_ip_addrs`, `contains_ip`,
    `ips_from_answers`, `ip_from_record` and `is_conn_closed`.
- `dnsrelay.responses`: `gen_server_failure`, `gen_not_impl` (with EDNS set)
  and `gen_with_rcode` build error replies to a query.
- `dnsrelay.sema`:
  - `LimitedSemaphore(n)` caps concurrent handlers.
  - `NoopSemaphore` has no limit.
  - Both can be used as context managers.

## What the package does not do

`dnsrelay` is a library only. It has no command-line program. It also has no
listening server: it does not accept queries over UDP, TCP, TLS or HTTPS
itself. Use the pieces above in your own server.

There is no DNSCrypt or DNS-over-QUIC client, and no response cache.

## Running the tests

```
pip install -e .[test]
pytest
```