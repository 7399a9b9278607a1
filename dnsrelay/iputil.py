"""Helpers for IP addresses found in DNS answers."""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional, Union

import dns.rdatatype
import dns.rrset

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def ip_from_rr(rr) -> Optional[IPAddress]:
    """Return the address held by an A or AAAA record, or None for others."""
    if rr.rdtype == dns.rdatatype.A:
        return ipaddress.IPv4Address(rr.address)
    if rr.rdtype == dns.rdatatype.AAAA:
        return ipaddress.IPv6Address(rr.address)

    return None


def _to_address(ip) -> Optional[IPAddress]:
    if ip is None:
        return None
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        addr = ip
    else:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped

    return addr


def _to_network(net) -> IPNetwork:
    if isinstance(net, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return net

    return ipaddress.ip_network(net, strict=False)


def contains_ip(nets: Iterable, ip) -> bool:
    """Report whether any of ``nets`` holds ``ip``.

    IPv4-mapped IPv6 addresses match IPv4 networks.  An invalid or missing
    address is never contained.
    """
    addr = _to_address(ip)
    if addr is None:
        return False

    return any(addr in _to_network(net) for net in nets)


def ip_addrs_from_answers(answers: Iterable) -> list[IPAddress]:
    """Collect the A and AAAA addresses from RRsets or single records."""
    result = []
    for item in answers:
        records = item if isinstance(item, dns.rrset.RRset) else (item,)
        for rr in records:
            ip = ip_from_rr(rr)
            if ip is not None:
                result.append(ip)

    return result


def _sort_key(addr: IPAddress) -> tuple[int, bytes]:
    as_v4 = _to_address(addr)
    if isinstance(as_v4, ipaddress.IPv4Address):
        return (0, as_v4.packed)

    return (1, addr.packed)


def sort_ip_addrs(addrs: Iterable) -> list[IPAddress]:
    """Return the addresses sorted with IPv4 first, then IPv6, each ascending."""
    converted = [
        a if isinstance(a, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(a)
        for a in addrs
    ]

    return sorted(converted, key=_sort_key)