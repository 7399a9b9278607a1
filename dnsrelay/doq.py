"""DNS-over-QUIC message handling."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import dns.message

from dnsrelay.framing import MAX_MSG_SIZE, add_prefix

log = logging.getLogger(__name__)

NEXT_PROTO_DQ = "doq"
"""ALPN token for DNS-over-QUIC."""

COMPAT_PROTO_DQ = (NEXT_PROTO_DQ, "doq-i02", "doq-i00", "dq")
"""ALPN tokens accepted on a QUIC connection, the RFC one and older drafts."""

MAX_QUIC_IDLE_TIMEOUT = 5 * 60.0
"""Maximum QUIC idle timeout in seconds."""

QUIC_ADDR_VALIDATOR_CACHE_SIZE = 1000
QUIC_ADDR_VALIDATOR_CACHE_TTL = 30 * 60.0

MIN_DNS_PACKET_SIZE = 12 + 5
"""Smallest plausible DNS query: header plus a minimal question."""

DOQ_CODE_NO_ERROR = 0
DOQ_CODE_INTERNAL_ERROR = 1
DOQ_CODE_PROTOCOL_ERROR = 2

_EDNS0_TCP_KEEPALIVE = 11


class DoQVersion(enum.Enum):
    """How DNS messages are framed on a QUIC stream."""

    V1_DRAFT = "draft"
    """Old drafts: the message without a length prefix."""
    V1 = "v1"
    """The RFC: the message preceded by its 2-byte length."""


class ShortBufferError(Exception):
    """Raised when a stream holds more data than the buffer takes."""

    def __init__(self, size: int) -> None:
        super().__init__(f"short buffer: more than {size} bytes")
        self.size = size


class DoQProtocolError(Exception):
    """A DoQ protocol violation; the connection should be closed."""

    code = DOQ_CODE_PROTOCOL_ERROR


class QUICAddrValidator:
    """Decides which clients need QUIC address validation.

    A small LRU cache remembers recently seen addresses for ``ttl`` seconds;
    those are not asked to validate again.
    """

    def __init__(
        self,
        cache_size: int = QUIC_ADDR_VALIDATOR_CACHE_SIZE,
        ttl: float = QUIC_ADDR_VALIDATOR_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if cache_size < 1:
            raise ValueError(f"bad cache size: {cache_size}")
        self.cache_size = cache_size
        self.ttl = ttl
        self._clock = clock
        self._cache: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def requires_validation(self, ip: Any) -> bool:
        """Report whether ``ip`` must validate its address, remembering it.

        ``ip`` is an IP address, its string, or a socket address tuple.
        """
        host = ip[0] if isinstance(ip, tuple) else ip
        addr = ipaddress.ip_address(host)
        if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        key = str(addr)

        with self._lock:
            now = self._clock()
            expires = self._cache.get(key)
            if expires is not None and expires > now:
                return False

            self._cache[key] = now + self.ttl
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

            return True


def read_all(stream: Any, size: int = 2 + MAX_MSG_SIZE) -> bytes:
    """Read from ``stream`` until its end, taking at most ``size`` bytes.

    ``stream`` is a socket or a binary file-like object.  Raises
    :class:`ShortBufferError` once ``size`` bytes are read without the end.
    """
    reader = getattr(stream, "recv", None) or stream.read
    data = bytearray()
    while True:
        if len(data) == size:
            raise ShortBufferError(size)

        chunk = reader(size - len(data))
        if not chunk:
            return bytes(data)
        data += chunk


def valid_quic_msg(msg: dns.message.Message) -> bool:
    """Report whether ``msg`` is acceptable over DoQ.

    A message carrying the EDNS0 TCP keepalive option is not.
    """
    if msg.edns < 0:
        return True

    for option in msg.options:
        if int(option.otype) == _EDNS0_TCP_KEEPALIVE:
            log.debug("client sent edns0 tcp keepalive option")
            return False

    return True


def decode_doq_query(buf: bytes) -> tuple[dns.message.Message, DoQVersion]:
    """Return the query in ``buf`` and the DoQ framing it was sent with.

    Raises ``ValueError`` for data too short to be a query and
    :class:`DoQProtocolError` for a malformed or forbidden message.
    """
    if len(buf) < MIN_DNS_PACKET_SIZE:
        raise ValueError("quic packet too short for dns query")

    packet_len = int.from_bytes(buf[:2], "big")
    if packet_len == len(buf) - 2:
        version, wire = DoQVersion.V1, buf[2:]
    else:
        version, wire = DoQVersion.V1_DRAFT, buf

    try:
        msg = dns.message.from_wire(wire)
    # Malformed wire data can surface as many exception types.
    except Exception as err:  # noqa: BLE001
        raise DoQProtocolError(f"unpacking quic packet: {err}") from err

    if not valid_quic_msg(msg):
        raise DoQProtocolError("edns0 tcp keepalive option is not allowed")

    return msg, version


def encode_doq_response(msg: Optional[dns.message.Message], version: DoQVersion) -> bytes:
    """Return ``msg`` framed for a DoQ stream of the given version."""
    if msg is None:
        raise ValueError("no response to write")

    wire = msg.to_wire()
    if version is DoQVersion.V1:
        return add_prefix(wire)
    if version is DoQVersion.V1_DRAFT:
        return wire

    raise ValueError(f"invalid protocol version: {version!r}")