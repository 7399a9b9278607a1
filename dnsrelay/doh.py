"""Decoding of DNS-over-HTTPS requests and encoding of their responses."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
from http import HTTPStatus
from typing import Any, Mapping, NamedTuple, Optional, Union
from urllib.parse import parse_qs

import dns.message

DNS_MESSAGE_TYPE = "application/dns-message"
"""Media type of DNS messages carried over HTTP."""

SERVER_NAME = "dnsrelay"
"""Value of the Server header in DoH responses."""

# Headers set by proxy servers, most trusted first.
_REAL_IP_HEADERS = ("CF-Connecting-IP", "True-Client-IP", "X-Real-IP")

_B64URL = re.compile(r"[A-Za-z0-9_-]*")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class DoHError(Exception):
    """A DoH request that must be answered with an HTTP error status."""

    def __init__(self, status: int, detail: str = "") -> None:
        self.status = HTTPStatus(status)
        message = self.status.phrase
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class _NetAddr(NamedTuple):
    ip: str
    port: int
    network: str


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""

    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value

    return ""


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError:
        return None


def real_ip_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[IPAddress]:
    """Return the client IP reported by proxy headers, or None.

    The headers are tried in this order: CF-Connecting-IP, True-Client-IP,
    X-Real-IP and the first entry of X-Forwarded-For.
    """
    for name in _REAL_IP_HEADERS:
        ip = _parse_ip(_header(headers, name))
        if ip is not None:
            return ip

    xff = _header(headers, "X-Forwarded-For")
    return _parse_ip(xff.split(",", 1)[0])


def _split_host_port(address: str) -> tuple[str, str]:
    def fail(reason: str) -> ValueError:
        return ValueError(f"address {address}: {reason}")

    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        host, rest = address[1:end], address[end + 1:]
        if not rest:
            raise fail("missing port in address")
        if not rest.startswith(":"):
            raise fail("unexpected character after ']' in address")
        return host, rest[1:]

    colon = address.rfind(":")
    if colon < 0:
        raise fail("missing port in address")
    host = address[:colon]
    if ":" in host:
        raise fail("too many colons in address")

    return host, address[colon + 1:]


def remote_addr(
    remote: str,
    headers: Optional[Mapping[str, str]] = None,
    h3: bool = False,
) -> tuple[_NetAddr, Optional[_NetAddr]]:
    """Return the real client address and the address of the last proxy.

    ``remote`` is the ``host:port`` of the peer.  When the headers name the
    real client, the peer is returned as the proxy and the client's port is
    zero; otherwise the proxy is None.  Addresses are ``(ip, port, network)``
    tuples where the network is ``"udp"`` for HTTP/3 and ``"tcp"`` otherwise.
    """
    host_str, port_str = _split_host_port(remote)
    try:
        port = int(port_str)
    except ValueError as err:
        raise ValueError(f"invalid port: {port_str!r}") from err

    host = _parse_ip(host_str)
    if host is None:
        raise ValueError(f"invalid ip: {host_str}")

    network = "udp" if h3 else "tcp"
    real_ip = real_ip_from_headers(headers)
    if real_ip is not None:
        return _NetAddr(str(real_ip), 0, network), _NetAddr(str(host), port, network)

    return _NetAddr(str(host), port, network), None


def _decode_b64url(text: str) -> Optional[bytes]:
    if not _B64URL.fullmatch(text) or len(text) % 4 == 1:
        return None

    try:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError):
        return None


def _dns_param(query: Any) -> str:
    if query is None:
        return ""
    if isinstance(query, (str, bytes)):
        text = query.decode() if isinstance(query, bytes) else query
        return parse_qs(text).get("dns", [""])[0]

    value = query.get("dns", "")
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""

    return value


def decode_doh_request(
    method: str,
    query: Any = None,
    content_type: Optional[str] = None,
    body: Any = b"",
) -> dns.message.Message:
    """Return the DNS query carried by a DoH request.

    GET takes the base64url ``dns`` parameter from ``query`` (a query string
    or a mapping); POST takes ``body`` (bytes or a binary file) and needs the
    DNS message content type.  Raises :class:`DoHError` with 400, 415 or 405.
    """
    if method == "GET":
        param = _dns_param(query)
        buf = _decode_b64url(param)
        if not buf:
            raise DoHError(HTTPStatus.BAD_REQUEST, f"cannot parse dns request from {param!r}")
    elif method == "POST":
        if content_type != DNS_MESSAGE_TYPE:
            raise DoHError(
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE, f"unsupported media type: {content_type}"
            )
        try:
            buf = body.read() if hasattr(body, "read") else bytes(body)
        except OSError as err:
            raise DoHError(HTTPStatus.BAD_REQUEST, f"cannot read the request body: {err}") from err
    else:
        raise DoHError(HTTPStatus.METHOD_NOT_ALLOWED, f"wrong http method: {method}")

    try:
        return dns.message.from_wire(buf)
    # Malformed wire data can surface as many exception types.
    except Exception as err:  # noqa: BLE001
        raise DoHError(HTTPStatus.BAD_REQUEST, f"unpacking: {err}") from err


def encode_doh_response(msg: Optional[dns.message.Message]) -> tuple[bytes, dict[str, str]]:
    """Return the body and headers of a DoH response carrying ``msg``.

    A missing or unpackable response raises :class:`DoHError` with 500.
    """
    if msg is None:
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR, "no response")

    try:
        body = msg.to_wire()
    except Exception as err:  # noqa: BLE001
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR, f"packing message: {err}") from err

    headers = {"Server": SERVER_NAME, "Content-Type": DNS_MESSAGE_TYPE}
    return body, headers