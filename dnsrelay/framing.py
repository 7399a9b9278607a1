"""Length-prefixed DNS message framing and advertised buffer sizes."""

from __future__ import annotations

import struct
from typing import Any

import dns.message

MAX_MSG_SIZE = 65535
"""Largest DNS message that fits a 2-byte length prefix."""

MIN_MSG_SIZE = 512
"""Smallest buffer a DNS client over UDP must accept."""

_PREFIX = struct.Struct("!H")


class MessageTooLargeError(ValueError):
    """Raised when a DNS message is larger than 64 KiB."""

    def __init__(self, size: int) -> None:
        super().__init__(f"dns message is too large: {size} bytes")
        self.size = size


def dns_size(is_udp: bool, msg: dns.message.Message) -> int:
    """Return the response buffer size the client can take.

    Over TCP this is always the maximum message size; over UDP it is the size
    advertised in the EDNS0 OPT record, never less than the DNS minimum.
    """
    if not is_udp:
        return MAX_MSG_SIZE

    size = msg.payload if msg.edns >= 0 else 0
    if size < MIN_MSG_SIZE:
        return MIN_MSG_SIZE

    return size


def _read_exact(stream: Any, count: int) -> bytes:
    reader = getattr(stream, "recv", None) or stream.read
    data = bytearray()
    while len(data) < count:
        chunk = reader(count - len(data))
        if not chunk:
            raise EOFError(f"expected {count} bytes, got {len(data)}")
        data += chunk

    return bytes(data)


def read_prefixed(stream: Any) -> bytes:
    """Read one DNS message preceded by its 2-byte big-endian length.

    ``stream`` is a socket or a binary file-like object.  Raises ``EOFError``
    if the stream ends early.
    """
    try:
        header = _read_exact(stream, _PREFIX.size)
    except EOFError as err:
        raise EOFError(f"reading len: {err}") from err

    (length,) = _PREFIX.unpack(header)
    try:
        return _read_exact(stream, length)
    except EOFError as err:
        raise EOFError(f"reading msg: {err}") from err


def add_prefix(data: bytes) -> bytes:
    """Return ``data`` preceded by its 2-byte big-endian length."""
    if len(data) > MAX_MSG_SIZE:
        raise MessageTooLargeError(len(data))

    return _PREFIX.pack(len(data)) + bytes(data)


def write_prefixed(data: bytes, stream: Any) -> None:
    """Write ``data`` with its length prefix to a socket or binary file."""
    framed = add_prefix(data)
    writer = getattr(stream, "sendall", None) or stream.write
    writer(framed)