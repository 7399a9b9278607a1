"""Request handling and resolution through the configured upstreams."""

from __future__ import annotations

import enum
import ipaddress
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from dnsrelay.ratelimit import IPRateLimiter
from dnsrelay.sema import NoopSemaphore, new_semaphore
from dnsrelay.upstreams import Upstream, UpstreamConfig

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
"""Default I/O timeout in seconds."""

NOT_IMPL_UDP_SIZE = 1452
"""EDNS0 buffer size advertised in NOTIMP responses."""


class Proto(str, enum.Enum):
    """The DNS protocol a request came over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"


class NoUpstreamsError(LookupError):
    """Raised when there is no upstream to send a request to."""

    def __init__(self, detail: str = "no upstreams specified") -> None:
        super().__init__(detail)


@dataclass
class DNSContext:
    """Everything known about one DNS request and its response.

    ``responder`` is called with the context to send ``res`` back to the
    client; the listener that received the request sets it.
    """

    proto: Proto
    req: dns.message.Message
    res: Optional[dns.message.Message] = None
    addr: Any = None
    upstream: Optional[Upstream] = None
    custom_upstream_config: Optional[UpstreamConfig] = None
    start_time: float = field(default_factory=time.time)
    request_id: int = 0
    conn: Any = None
    local_ip: Any = None
    responder: Optional[Callable[["DNSContext"], None]] = None


@dataclass
class ProxyConfig:
    """Settings of a :class:`Proxy`."""

    upstream_config: UpstreamConfig = field(default_factory=UpstreamConfig)
    fallbacks: list = field(default_factory=list)
    udp_listen_addrs: list = field(default_factory=list)
    tcp_listen_addrs: list = field(default_factory=list)
    udp_buffer_size: int = 0
    ratelimit: int = 0
    ratelimit_whitelist: list = field(default_factory=list)
    refuse_any: bool = False
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    max_concurrent_requests: int = 0
    trusted_proxies: list = field(default_factory=list)
    before_request_handler: Optional[Callable[["Proxy", DNSContext], bool]] = None
    request_handler: Optional[Callable[["Proxy", DNSContext], None]] = None
    response_handler: Optional[Callable[[DNSContext, Optional[BaseException]], None]] = None


def _respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    if ttl < min_ttl:
        return min_ttl
    if max_ttl and ttl > max_ttl:
        return max_ttl

    return ttl


def _exchange_one(u: Upstream, req: dns.message.Message) -> dns.message.Message:
    reply = u.exchange(req)
    if reply is None:
        raise OSError(f"upstream {u.address()} returned no response")

    return reply


def _all_failed(errors: Sequence[BaseException]) -> BaseException:
    if not errors:
        return NoUpstreamsError()
    if len(errors) == 1:
        return errors[0]

    detail = "; ".join(str(e) for e in errors)
    err = OSError(f"all upstreams failed: {detail}")
    err.__cause__ = errors[0]
    return err


def _exchange_parallel(
    ups: Sequence[Upstream], req: dns.message.Message
) -> tuple[dns.message.Message, Upstream]:
    if not ups:
        raise NoUpstreamsError()

    errors: list[BaseException] = []
    pool = ThreadPoolExecutor(max_workers=len(ups))
    try:
        futures = {pool.submit(_exchange_one, u, req): u for u in ups}
        for fut in as_completed(futures):
            try:
                return fut.result(), futures[fut]
            except Exception as exc:  # noqa: BLE001 - any upstream failure
                errors.append(exc)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    raise _all_failed(errors)


def _log_respond_error(err: BaseException, proto: Proto) -> None:
    msg = f"responding {proto.value} request"
    if isinstance(err, (EOFError, BrokenPipeError, ConnectionError)):
        log.debug("%s: connection is closed; original error: %s", msg, err)
    elif isinstance(err, TimeoutError):
        log.debug("%s: connection timed out; original error: %s", msg, err)
    else:
        log.error("%s: %s", msg, err)


class Proxy:
    """Handles DNS requests and resolves them through upstream servers."""

    def __init__(self, config: Optional[ProxyConfig] = None) -> None:
        self.config = config if config is not None else ProxyConfig()

        if self.config.max_concurrent_requests > 0:
            log.info("max concurrent requests is set to %d", self.config.max_concurrent_requests)
            self.request_sema = new_semaphore(self.config.max_concurrent_requests)
        else:
            self.request_sema = NoopSemaphore()

        try:
            self.trusted_networks = [
                ipaddress.ip_network(s, strict=False) for s in self.config.trusted_proxies
            ]
        except ValueError as err:
            raise ValueError(f"initializing subnet detector for proxies verifying: {err}") from err

        self._ratelimiter = IPRateLimiter(self.config.ratelimit, self.config.ratelimit_whitelist)
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()

    def new_context(self, proto: Proto, req: dns.message.Message) -> DNSContext:
        """Return a fresh context for ``req`` with the next request id."""
        with self._counter_lock:
            request_id = next(self._counter)

        return DNSContext(proto=Proto(proto), req=req, request_id=request_id)

    def handle_dns_request(self, ctx: DNSContext) -> None:
        """Process the request in ``ctx`` and send the response.

        Incoming responses and rate-limited UDP requests are dropped.  An
        error from resolving is raised after the response has been sent.
        """
        ctx.start_time = time.time()
        req = ctx.req
        log.debug("IN: %s", req)

        if req.flags & dns.flags.QR:
            log.debug("dropping incoming reply packet from %s", ctx.addr)
            return

        before = self.config.before_request_handler
        if before is not None:
            try:
                ok = before(self, ctx)
            except Exception as exc:  # noqa: BLE001 - answered with SERVFAIL
                log.error("error in the before request handler: %s", exc)
                ctx.res = self.gen_server_failure(req)
                self._respond(ctx)
                return
            if not ok:
                return

        if ctx.proto is Proto.UDP and self._ratelimiter.is_ratelimited(ctx.addr):
            log.debug("ratelimiting %s based on ip only", ctx.addr)
            return

        if len(req.question) != 1:
            log.debug("got invalid number of questions: %d", len(req.question))
            ctx.res = self.gen_server_failure(req)

        if (
            self.config.refuse_any
            and req.question
            and req.question[0].rdtype == dns.rdatatype.ANY
        ):
            log.debug("refusing type=ANY request")
            ctx.res = self.gen_not_impl(req)

        error: Optional[BaseException] = None
        if ctx.res is None:
            if not self.config.upstream_config.upstreams:
                raise RuntimeError("no default upstreams specified")

            try:
                if self.config.request_handler is not None:
                    self.config.request_handler(self, ctx)
                else:
                    self.resolve(ctx)
            except Exception as exc:  # noqa: BLE001 - re-raised after responding
                error = exc

        if ctx.res is not None:
            log.debug("OUT: %s", ctx.res)
        self._respond(ctx)

        if error is not None:
            raise error

    def resolve(self, ctx: DNSContext) -> None:
        """Resolve ``ctx.req`` through the upstreams and set ``ctx.res``.

        On failure ``ctx.res`` holds a SERVFAIL response and the error is
        raised after the response handler has seen it.
        """
        error: Optional[BaseException] = None
        try:
            self._reply_from_upstream(ctx)
        except Exception as exc:  # noqa: BLE001 - passed to the handler, then raised
            error = exc

        if self.config.response_handler is not None:
            self.config.response_handler(ctx, error)

        if error is not None:
            raise error

    def gen_server_failure(self, req: dns.message.Message) -> dns.message.Message:
        """Return a SERVFAIL response to ``req``."""
        return self.gen_with_rcode(req, dns.rcode.SERVFAIL)

    def gen_not_impl(self, req: dns.message.Message) -> dns.message.Message:
        """Return a NOTIMP response to ``req`` that still advertises EDNS."""
        resp = self.gen_with_rcode(req, dns.rcode.NOTIMP)
        # NOTIMP without EDNS would read as "EDNS is not supported".
        resp.use_edns(0, 0, NOT_IMPL_UDP_SIZE)
        return resp

    def gen_with_rcode(self, req: dns.message.Message, code: int) -> dns.message.Message:
        """Return an empty response to ``req`` with the given rcode."""
        resp = dns.message.Message(id=req.id)
        resp.flags = dns.flags.QR | (req.flags & (dns.flags.RD | dns.flags.CD))
        resp.set_opcode(req.opcode())
        resp.flags |= dns.flags.RA
        resp.question = list(req.question[:1])
        resp.set_rcode(code)
        return resp

    def _select_upstreams(self, ctx: DNSContext) -> list:
        host = ctx.req.question[0].name.to_text()
        if ctx.custom_upstream_config is not None:
            ups = ctx.custom_upstream_config.upstreams_for_domain(host)
            if ups:
                return ups

        return self.config.upstream_config.upstreams_for_domain(host)

    def _exchange(
        self, req: dns.message.Message, ups: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        errors: list[BaseException] = []
        for u in ups:
            try:
                return _exchange_one(u, req), u
            except Exception as exc:  # noqa: BLE001 - try the next upstream
                log.debug("upstream %s failed: %s", u.address(), exc)
                errors.append(exc)

        raise _all_failed(errors)

    def _set_min_max_ttl(self, reply: dns.message.Message) -> None:
        for rrset in reply.answer:
            new_ttl = _respect_ttl_overrides(
                rrset.ttl, self.config.cache_min_ttl, self.config.cache_max_ttl
            )
            if new_ttl != rrset.ttl:
                log.debug("override ttl from %d to %d", rrset.ttl, new_ttl)
                rrset.ttl = new_ttl

    def _reply_from_upstream(self, ctx: DNSContext) -> None:
        req = ctx.req
        ups = self._select_upstreams(ctx)
        start = time.monotonic()

        reply: Optional[dns.message.Message] = None
        used: Optional[Upstream] = None
        error: Optional[BaseException] = None
        try:
            reply, used = self._exchange(req, ups)
        except Exception as exc:  # noqa: BLE001 - fallbacks may still answer
            error = exc

        log.debug("rtt: %.3fs", time.monotonic() - start)

        if error is not None and self.config.fallbacks:
            log.debug("using the fallback upstream due to %s", error)
            try:
                reply, used = _exchange_parallel(self.config.fallbacks, req)
                error = None
            except Exception as exc:  # noqa: BLE001
                error = exc

        if reply is not None:
            ctx.upstream = used
            self._set_min_max_ttl(reply)
            # Some upstreams send replies without a question section.
            if req.question and not reply.question:
                reply.question = [req.question[0]]
        else:
            reply = self.gen_server_failure(req)

        ctx.res = reply
        if error is not None:
            raise error

    def _respond(self, ctx: DNSContext) -> None:
        if ctx.responder is None:
            log.debug("no responder for %s request", ctx.proto.value)
            return

        try:
            ctx.responder(ctx)
        except Exception as exc:  # noqa: BLE001 - logged by severity
            _log_respond_error(exc, ctx.proto)