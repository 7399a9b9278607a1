import io
import socket

import dns.message
import pytest

from dnsrelay import framing
from dnsrelay.framing import (
    MessageTooLargeError,
    add_prefix,
    dns_size,
    read_prefixed,
    write_prefixed,
)


def test_add_prefix_wire_bytes():
    assert add_prefix(b"abc") == b"\x00\x03abc"


def test_add_prefix_empty():
    assert add_prefix(b"") == b"\x00\x00"


def test_add_prefix_too_large():
    with pytest.raises(MessageTooLargeError):
        add_prefix(b"\x00" * (framing.MAX_MSG_SIZE + 1))


def test_write_then_read_roundtrip_file():
    payload = dns.message.make_query("example.com.", "A").to_wire()
    buf = io.BytesIO()
    write_prefixed(payload, buf)
    buf.seek(0)
    assert read_prefixed(buf) == payload
    assert buf.read() == b""


def test_several_messages_in_sequence():
    buf = io.BytesIO()
    messages = [b"first", b"second message", b""]
    for m in messages:
        write_prefixed(m, buf)
    buf.seek(0)
    assert [read_prefixed(buf) for _ in messages] == messages


def test_roundtrip_over_socketpair():
    left, right = socket.socketpair()
    try:
        payload = b"x" * 1000
        write_prefixed(payload, left)
        assert read_prefixed(right) == payload
    finally:
        left.close()
        right.close()


def test_read_truncated_message():
    buf = io.BytesIO(add_prefix(b"hello")[:-2])
    with pytest.raises(EOFError, match="reading msg"):
        read_prefixed(buf)


def test_read_empty_stream():
    with pytest.raises(EOFError, match="reading len"):
        read_prefixed(io.BytesIO(b""))


def test_dns_size_tcp_is_max():
    msg = dns.message.make_query("example.com.", "A", use_edns=0, payload=1232)
    assert dns_size(False, msg) == framing.MAX_MSG_SIZE


def test_dns_size_udp_without_edns():
    msg = dns.message.make_query("example.com.", "A")
    assert dns_size(True, msg) == framing.MIN_MSG_SIZE


def test_dns_size_udp_advertised():
    msg = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    assert dns_size(True, msg) == 4096


def test_dns_size_udp_small_advertised_is_raised_to_minimum():
    msg = dns.message.make_query("example.com.", "A", use_edns=0, payload=100)
    assert dns_size(True, msg) == framing.MIN_MSG_SIZE