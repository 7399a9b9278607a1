import io
import struct

import dns.edns
import dns.message
import pytest

from dnsrelay.doq import (
    DoQProtocolError,
    DoQVersion,
    QUICAddrValidator,
    ShortBufferError,
    decode_doq_query,
    encode_doq_response,
    read_all,
    valid_quic_msg,
)
from dnsrelay.framing import add_prefix


def _query():
    msg = dns.message.make_query("google-public-dns-a.google.com.", "A")
    msg.id = 0
    return msg


class _ChunkedReader:
    def __init__(self, data: bytes, chunk: int = 400) -> None:
        self._data = data
        self._chunk = chunk

    def read(self, n: int) -> bytes:
        take = min(n, self._chunk)
        out, self._data = self._data[:take], self._data[take:]
        return out


def test_decode_v1():
    q = _query()
    msg, version = decode_doq_query(add_prefix(q.to_wire()))
    assert version is DoQVersion.V1
    assert msg.question == q.question


def test_decode_draft():
    q = _query()
    msg, version = decode_doq_query(q.to_wire())
    assert version is DoQVersion.V1_DRAFT
    assert msg.question == q.question


def test_large_packet_chunked():
    q = _query()
    q.use_edns(0, payload=4096, options=[dns.edns.GenericOption(12, bytes(4096))])
    framed = add_prefix(q.to_wire())

    data = read_all(_ChunkedReader(framed))
    assert data == framed

    msg, version = decode_doq_query(data)
    assert version is DoQVersion.V1
    assert msg.question == q.question


def test_decode_too_short():
    with pytest.raises(ValueError, match="too short"):
        decode_doq_query(b"\x00" * 5)


def test_decode_garbage():
    with pytest.raises(DoQProtocolError):
        decode_doq_query(b"\x00\x01" + b"\xff" * 18)


def test_keepalive_rejected():
    q = _query()
    q.use_edns(0, options=[dns.edns.GenericOption(11, b"")])
    assert valid_quic_msg(q) is False
    with pytest.raises(DoQProtocolError):
        decode_doq_query(add_prefix(q.to_wire()))


def test_valid_without_edns():
    assert valid_quic_msg(_query()) is True


def test_encode_v1_and_draft():
    resp = dns.message.make_response(_query())
    wire = resp.to_wire()

    v1 = encode_doq_response(resp, DoQVersion.V1)
    assert v1[:2] == struct.pack("!H", len(wire))
    assert v1[2:] == wire

    assert encode_doq_response(resp, DoQVersion.V1_DRAFT) == wire


def test_encode_round_trip():
    resp = dns.message.make_response(_query())
    for version in DoQVersion:
        framed = encode_doq_response(resp, version)
        msg, got_version = decode_doq_query(framed)
        assert got_version is version
        assert msg.id == resp.id


def test_encode_missing():
    with pytest.raises(ValueError, match="no response"):
        encode_doq_response(None, DoQVersion.V1)


def test_read_all_exact_fit():
    assert read_all(io.BytesIO(b"abcd"), 5) == b"abcd"


def test_read_all_short_buffer():
    with pytest.raises(ShortBufferError):
        read_all(io.BytesIO(b"abcdef"), 4)


def test_read_all_empty():
    assert read_all(io.BytesIO(b""), 10) == b""


def test_validator_caches_addresses():
    now = [0.0]
    v = QUICAddrValidator(cache_size=10, ttl=30.0, clock=lambda: now[0])

    assert v.requires_validation("192.0.2.1") is True
    assert v.requires_validation(("192.0.2.1", 4433)) is False
    assert v.requires_validation("192.0.2.2") is True

    now[0] = 31.0
    assert v.requires_validation("192.0.2.1") is True


def test_validator_evicts_oldest():
    v = QUICAddrValidator(cache_size=1, ttl=100.0, clock=lambda: 0.0)
    assert v.requires_validation("192.0.2.1") is True
    assert v.requires_validation("192.0.2.2") is True
    assert v.requires_validation("192.0.2.1") is True


def test_validator_rejects_bad_size():
    with pytest.raises(ValueError):
        QUICAddrValidator(cache_size=0)