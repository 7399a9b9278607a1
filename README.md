# dnsrelay

A forwarding DNS proxy library built on dnspython. It accepts DNS queries
over UDP and TCP, picks the upstream resolvers for each query by its
domain, and writes the answer back to the client. It also has helpers for
DNS-over-HTTPS and DNS-over-QUIC messages, per-client rate limiting, and a
cap on how many requests are handled at once.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Upstreams

An upstream is any object with three methods, as described by the
`dnsrelay.upstreams.Upstream` protocol:

- `exchange(msg)` sends a `dns.message.Message` and returns the response;
- `address()` returns the server's address as a string;
- `close()` releases what the upstream holds.

The package ships no upstream clients of its own. You supply them through
a factory that turns an address string into an upstream. A minimal one
over plain UDP:

```python
import dns.query

class UDPUpstream:
    def __init__(self, addr):
        self._addr = addr

    def exchange(self, msg):
        return dns.query.udp(msg, self._addr, timeout=5)

    def address(self):
        return self._addr

    def close(self):
        pass
```

## Upstream configuration

`dnsrelay.upstreams.parse_upstreams_config(lines, factory)` builds an
`UpstreamConfig` from a list of lines:

- `1.1.1.1` is a default upstream. It is used for every query that no
  other rule matches.
- `[/example.org/]10.0.0.1` sends `example.org` and its subdomains to
  `10.0.0.1`.
- `[/*.example.org/]10.0.0.2` sends only the subdomains of `example.org`
  to `10.0.0.2`.
- `[/www.example.org/]#` excludes `www.example.org` from the rules above,
  so it goes to the default upstreams.
- `[//]10.0.0.3` is used for unqualified names, the ones without dots.

When several rules match, the most specific domain wins. The factory is
called once for each distinct address, so one upstream object is shared by
every rule that names that address. A malformed line or an invalid domain
raises `UpstreamConfigError`. So does an error from the factory.

```python
from dnsrelay.upstreams import parse_upstreams_config

config = parse_upstreams_config(
    ["[/example.org/]10.0.0.1", "[/www.example.org/]#", "1.1.1.1"],
    factory=UDPUpstream,
)
for up in config.upstreams_for_domain("mail.example.org."):
    print(up.address())   # 10.0.0.1
```

`UpstreamConfig.close()` closes every upstream in the configuration. It
can also be used as a context manager.

## Handling requests

`dnsrelay.core.Proxy` takes a `ProxyConfig`. Its main fields are:

- `upstream_config` and `fallbacks`;
- `refuse_any`, `ratelimit` and `ratelimit_whitelist`;
- `cache_min_ttl` and `cache_max_ttl`, which clamp the TTLs of answer
  records;
- `max_concurrent_requests`, `udp_listen_addrs`, `tcp_listen_addrs` and
  `udp_buffer_size`;
- the hooks `before_request_handler`, `request_handler` and
  `response_handler`.

`Proxy.handle_dns_request(ctx)` takes a `DNSContext` made by
`Proxy.new_context(proto, req)` and handles it as follows:

- Messages that are themselves responses are dropped.
- If `before_request_handler` returns false, the request is dropped. If
  it raises, the client gets SERVFAIL.
- UDP requests from a client over its rate limit are dropped.
- A query without exactly one question gets SERVFAIL.
- An `ANY` query gets NOTIMP when `refuse_any` is set.
- Any other query goes to `request_handler` if one is set, and to
  `Proxy.resolve` otherwise. `Proxy.resolve` tries the selected upstreams
  one by one. If they all fail, it asks every fallback at once and keeps
  the first answer. If nothing answers, the client gets SERVFAIL and the
  error is raised.

The response goes out through the context's `responder`. The proxy needs
at least one default upstream. Without one, a query that reaches
resolution raises `RuntimeError`. A context's `custom_upstream_config` is
consulted before the proxy's own configuration.

## Serving over UDP and TCP

`dnsrelay.listeners.ProxyServer` binds the proxy's UDP and TCP listen
addresses, given as `(host, port)` tuples, and serves queries through the
proxy. TCP messages carry the usual 2-byte length prefix.

```python
from dnsrelay.core import Proxy, ProxyConfig
from dnsrelay.listeners import ProxyServer

proxy = Proxy(ProxyConfig(
    upstream_config=config,
    udp_listen_addrs=[("127.0.0.1", 0)],
    tcp_listen_addrs=[("127.0.0.1", 0)],
))
with ProxyServer(proxy) as server:
    print(server.addr("udp"), server.addrs("tcp"))
```

`start()` opens the listeners and `stop()` closes them along with the
upstreams. `addr(proto)` and `addrs(proto)` report the bound addresses.
Port zero picks a free port.

## Smaller pieces

- `dnsrelay.framing`:
  - `read_prefixed`, `write_prefixed` and `add_prefix` handle 2-byte
    length-prefixed messages;
  - `dns_size` gives the response size a client can take;
  - `MessageTooLargeError` is raised for messages over 64 KiB.
- `dnsrelay.iputil`:
  - `ip_from_rr` and `ip_addrs_from_answers` extract addresses from A and
    AAAA records;
  - `contains_ip` tests subnet membership and matches IPv4-mapped IPv6
    addresses against IPv4 networks;
  - `sort_ip_addrs` sorts IPv4 first.
- `dnsrelay.ratelimit`: `RateLimiter` enforces a sliding-window limit.
  `IPRateLimiter` keeps one limiter per client IP and accepts an
  allowlist.
- `dnsrelay.sema`: `NoopSemaphore`, `LimitSemaphore` and
  `new_semaphore(max_res)`.
- `dnsrelay.doh`:
  - `decode_doh_request` reads GET and POST DoH requests;
  - `encode_doh_response` builds the response body and headers;
  - `real_ip_from_headers` and `remote_addr` find the client behind
    proxy headers.
  - Failures raise `DoHError`, which carries an HTTP status.
- `dnsrelay.doq`:
  - `read_all` reads a stream to its end;
  - `decode_doq_query` accepts both the RFC form (length-prefixed) and the
    older draft form;
  - `encode_doq_response` frames a response for either form;
  - `valid_quic_msg` rejects the EDNS0 TCP keepalive option;
  - `QUICAddrValidator` decides which clients must validate their address.

## What it does not do

- There are only plain UDP and TCP listeners. No server listens for DNS
  over TLS, HTTPS, QUIC or DNSCrypt. The DoH and DoQ modules only encode
  and decode messages, and you wire them into an HTTP or QUIC server of
  your choice.
- It has no response cache. `cache_min_ttl` and `cache_max_ttl` only
  rewrite the TTLs in answers.
- It has no upstream clients. Upstreams come from your factory.
- It installs no command-line program.