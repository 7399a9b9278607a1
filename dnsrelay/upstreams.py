"""Upstream selection by domain name."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, runtime_checkable

import dns.message

log = logging.getLogger(__name__)

UNQUALIFIED_NAMES = "unqualified_names"
"""Reserved key for names without dots."""

_WILDCARD = "*."


@runtime_checkable
class Upstream(Protocol):
    """A DNS server that queries are forwarded to."""

    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        """Send ``msg`` and return the response."""

    def address(self) -> str:
        """Return the address of the server."""

    def close(self) -> None:
        """Release the resources held by the upstream."""


class UpstreamConfigError(ValueError):
    """Raised for an invalid upstream specification."""


def validate_domain_name(name: str) -> str:
    """Return ``name`` if it is a valid domain name, else raise."""
    if not name:
        raise UpstreamConfigError("bad domain name: empty")
    if len(name) > 253:
        raise UpstreamConfigError(f"bad domain name {name!r}: too long")

    for label in name.split("."):
        if not label:
            raise UpstreamConfigError(f"bad domain name {name!r}: empty label")
        if len(label) > 63:
            raise UpstreamConfigError(f"bad domain name {name!r}: label too long")
        if label.startswith("-") or label.endswith("-"):
            raise UpstreamConfigError(
                f"bad domain name {name!r}: label {label!r} starts or ends with a hyphen"
            )
        bad = [c for c in label if not (c.isalnum() or c in "-_")]
        if bad:
            raise UpstreamConfigError(f"bad domain name {name!r}: bad character {bad[0]!r}")

    return name


def parse_upstream_line(line: str) -> tuple[str, list[str]]:
    """Split ``[/d1/../dN/]upstream`` into the upstream and its domains.

    Domains are lowered and fully qualified; an empty domain stands for
    unqualified names.  A line without a domain part gives no domains.
    """
    if not line.startswith("[/"):
        return line, []

    parts = line[2:].split("/]")
    if len(parts) != 2:
        raise UpstreamConfigError(f"wrong upstream specification: {line}")

    domains, address = parts
    hosts = []
    for conf_host in domains.split("/"):
        if conf_host:
            validate_domain_name(conf_host.removeprefix(_WILDCARD))
            hosts.append((conf_host + ".").lower())
        else:
            hosts.append(UNQUALIFIED_NAMES)

    return address, hosts


@dataclass
class UpstreamConfig:
    """Default upstreams and the upstreams reserved for particular domains."""

    upstreams: list = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list] = field(default_factory=dict)
    specified_domain_upstreams: dict[str, list] = field(default_factory=dict)
    subdomain_exclusions: set[str] = field(default_factory=set)

    def upstreams_for_domain(self, host: str) -> list:
        """Return the upstreams for ``host``, the most specific match winning.

        A domain that was excluded, or that matches nothing, gets the default
        upstreams.
        """
        if not self.domain_reserved_upstreams:
            return list(self.upstreams)

        dots = host.count(".")
        if dots < 2:
            host = UNQUALIFIED_NAMES
        else:
            host = host.lower()
            if host in self.subdomain_exclusions:
                ups = self.specified_domain_upstreams.get(host)
                if ups:
                    return list(ups)

                ups = self.domain_reserved_upstreams.get(host.split(".", 1)[1])
                if ups:
                    return list(ups)

                return list(self.upstreams)

        for i in range(dots):
            name = host.split(".", i)[-1]
            if name not in self.domain_reserved_upstreams:
                continue

            ups = self.domain_reserved_upstreams[name]
            if not ups:
                return list(self.upstreams)

            return list(ups)

        return list(self.upstreams)

    def close(self) -> None:
        """Close every upstream, raising once if any of them failed."""
        errors: list[Exception] = []

        def close_all(ups: Iterable) -> None:
            for u in ups:
                try:
                    u.close()
                except Exception as err:  # noqa: BLE001 - gathered and re-raised
                    errors.append(err)

        close_all(self.upstreams)
        for spec in (self.domain_reserved_upstreams, self.specified_domain_upstreams):
            for domain in sorted(spec):
                close_all(spec[domain])

        if errors:
            detail = "; ".join(str(e) for e in errors)
            raise RuntimeError(f"failed to close some upstreams: {detail}") from errors[0]

    def __enter__(self) -> "UpstreamConfig":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def parse_upstreams_config(lines: Iterable[str], factory: Callable[[str], Upstream]) -> UpstreamConfig:
    """Build an :class:`UpstreamConfig` from upstream specification lines.

    ``factory`` creates an upstream from its address; each distinct address
    is created once.  ``[/domain/]#`` excludes a domain from reservation and
    ``[/*.domain/]`` reserves only the subdomains of a domain.
    """
    upstreams: list = []
    index: dict[str, Upstream] = {}
    domain_reserved: dict[str, list] = {}
    specified: dict[str, list] = {}
    subdomains_only: dict[str, list] = {}
    exclusions: set[str] = set()

    for i, line in enumerate(lines):
        address, hosts = parse_upstream_line(line)

        if address == "#" and hosts:
            for host in hosts:
                if host.startswith(_WILDCARD):
                    host = host[len(_WILDCARD):]
                    exclusions.add(host)
                    subdomains_only[host] = []
                else:
                    domain_reserved[host] = []
                    specified[host] = []
            continue

        ups = index.get(address)
        if ups is None:
            try:
                ups = factory(address)
            except Exception as err:
                raise UpstreamConfigError(f"cannot prepare the upstream {line}: {err}") from err
            index[address] = ups

        if not hosts:
            log.debug("upstream %d: %s", i, ups.address())
            upstreams.append(ups)
            continue

        for host in hosts:
            if host.startswith(_WILDCARD):
                host = host[len(_WILDCARD):]
                exclusions.add(host)
                log.debug("domain %s is added to exclusions list", host)
                subdomains_only.setdefault(host, []).append(ups)
            else:
                specified.setdefault(host, []).append(ups)

            domain_reserved.setdefault(host, []).append(ups)

        log.debug("upstream %d: %s is reserved for %s", i, ups.address(), ", ".join(hosts))

    for host, ups in subdomains_only.items():
        domain_reserved[host] = list(ups)

    return UpstreamConfig(
        upstreams=upstreams,
        domain_reserved_upstreams=domain_reserved,
        specified_domain_upstreams=specified,
        subdomain_exclusions=exclusions,
    )