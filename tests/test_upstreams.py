import pytest

from dnsrelay.upstreams import (
    UNQUALIFIED_NAMES,
    UpstreamConfig,
    UpstreamConfigError,
    parse_upstream_line,
    parse_upstreams_config,
    validate_domain_name,
)


class FakeUpstream:
    def __init__(self, addr, fail_close=False):
        self.addr = addr
        self.closed = 0
        self.fail_close = fail_close

    def exchange(self, msg):
        return msg

    def address(self):
        return self.addr

    def close(self):
        self.closed += 1
        if self.fail_close:
            raise OSError(f"cannot close {self.addr}")


def make_upstream(addr):
    if "://" in addr:
        scheme, rest = addr.split("://", 1)
        if ":" not in rest:
            rest += ":853"
        return FakeUpstream(f"{scheme}://{rest}")
    if ":" not in addr:
        addr += ":53"
    return FakeUpstream(addr)


def addresses(config, domain):
    return [u.address() for u in config.upstreams_for_domain(domain)]


def test_get_upstreams_for_domain():
    config = parse_upstreams_config(
        [
            "[/google.com/local/]4.3.2.1",
            "[/www.google.com//]1.2.3.4",
            "[/maps.google.com/]#",
            "[/www.google.com/]tls://1.1.1.1",
            "[/_acme-challenge.example.org/]#",
        ],
        make_upstream,
    )
    assert addresses(config, "www.google.com.") == ["1.2.3.4:53", "tls://1.1.1.1:853"]
    assert addresses(config, "www2.google.com.") == ["4.3.2.1:53"]
    assert addresses(config, "internal.local.") == ["4.3.2.1:53"]
    assert addresses(config, "google.") == ["1.2.3.4:53"]
    assert addresses(config, "_acme-challenge.example.org.") == []
    assert addresses(config, "maps.google.com.") == []


def test_get_upstreams_for_domain_without_duplicates():
    calls = []

    def factory(addr):
        calls.append(addr)
        return make_upstream(addr)

    config = parse_upstreams_config(["[/example.com/]1.1.1.1", "[/example.org/]1.1.1.1"], factory)
    assert config.upstreams == []
    assert len(config.domain_reserved_upstreams) == 2
    u1 = config.domain_reserved_upstreams["example.com."][0]
    u2 = config.domain_reserved_upstreams["example.org."][0]
    assert u1 is u2
    assert calls == ["1.1.1.1"]


WILDCARD_CONF = [
    "0.0.0.1",
    "[/a.x/]0.0.0.2",
    "[/*.a.x/]0.0.0.3",
    "[/b.a.x/]0.0.0.4",
    "[/*.b.a.x/]0.0.0.5",
    "[/*.x.z/]0.0.0.6",
    "[/c.b.a.x/]#",
]


@pytest.mark.parametrize(
    "host, want",
    [
        ("d.x.", ["0.0.0.1:53"]),
        ("a.x.", ["0.0.0.2:53"]),
        ("c.a.x.", ["0.0.0.3:53"]),
        ("b.a.x.", ["0.0.0.4:53"]),
        ("d.b.a.x.", ["0.0.0.5:53"]),
        ("c.b.a.x.", ["0.0.0.1:53"]),
        ("d.c.b.a.x.", ["0.0.0.1:53"]),
        ("x.z.", ["0.0.0.1:53"]),
        ("a.x.z.", ["0.0.0.6:53"]),
    ],
)
def test_wildcards(host, want):
    config = parse_upstreams_config(WILDCARD_CONF, make_upstream)
    assert addresses(config, host) == want


@pytest.mark.parametrize(
    "host, want",
    [
        ("a.x.", ["0.0.0.2:53"]),
        ("c.a.x.", ["0.0.0.3:53"]),
        ("b.a.x.", ["0.0.0.3:53"]),
        ("d.b.a.x.", ["0.0.0.5:53"]),
    ],
)
def test_sub_wildcards(host, want):
    conf = ["0.0.0.1", "[/a.x/]0.0.0.2", "[/*.a.x/]0.0.0.3", "[/*.b.a.x/]0.0.0.5"]
    config = parse_upstreams_config(conf, make_upstream)
    assert addresses(config, host) == want


@pytest.mark.parametrize(
    "host, want",
    [
        ("example.org.", ["127.0.0.1:5302"]),
        ("sub.example.org.", ["127.0.0.1:5303"]),
        ("www.example.org.", ["127.0.0.1:5304"]),
        ("abc.www.example.org.", ["127.0.0.1:5301"]),
    ],
)
def test_default_wildcards(host, want):
    conf = [
        "127.0.0.1:5301",
        "[/example.org/]127.0.0.1:5302",
        "[/*.example.org/]127.0.0.1:5303",
        "[/www.example.org/]127.0.0.1:5304",
        "[/*.www.example.org/]#",
    ]
    config = parse_upstreams_config(conf, make_upstream)
    assert addresses(config, host) == want


def test_only_defaults_used_without_reservations():
    config = parse_upstreams_config(["1.1.1.1", "8.8.8.8"], make_upstream)
    assert addresses(config, "anything.example.com.") == ["1.1.1.1:53", "8.8.8.8:53"]


def test_parse_upstream_line_plain():
    assert parse_upstream_line("8.8.8.8") == ("8.8.8.8", [])


def test_parse_upstream_line_domains():
    assert parse_upstream_line("[/Example.COM//]1.1.1.1") == (
        "1.1.1.1",
        ["example.com.", UNQUALIFIED_NAMES],
    )


def test_parse_upstream_line_wildcard():
    assert parse_upstream_line("[/*.example.com/]1.1.1.1") == ("1.1.1.1", ["*.example.com."])


@pytest.mark.parametrize("line", ["[/example.com]1.1.1.1", "[/a.com/]x/]y"])
def test_parse_upstream_line_bad_spec(line):
    with pytest.raises(UpstreamConfigError, match="wrong upstream specification"):
        parse_upstream_line(line)


def test_parse_upstream_line_bad_domain():
    with pytest.raises(UpstreamConfigError):
        parse_upstream_line("[/-bad.com/]1.1.1.1")


def test_validate_domain_name_accepts_underscore():
    assert validate_domain_name("_acme-challenge.example.org") == "_acme-challenge.example.org"


@pytest.mark.parametrize("name", ["", "bad..com", "a" * 64 + ".com", "bad-.com", "sp ace.com"])
def test_validate_domain_name_rejects(name):
    with pytest.raises(UpstreamConfigError):
        validate_domain_name(name)


def test_factory_error_is_wrapped():
    def factory(addr):
        raise ValueError("unsupported scheme")

    with pytest.raises(UpstreamConfigError, match="cannot prepare the upstream"):
        parse_upstreams_config(["bogus://x"], factory)


def test_close_closes_every_upstream():
    config = parse_upstreams_config(["1.1.1.1", "[/example.com/]2.2.2.2"], make_upstream)
    default = config.upstreams[0]
    reserved = config.domain_reserved_upstreams["example.com."][0]
    config.close()
    assert default.closed == 1
    assert reserved.closed >= 1


def test_close_reports_failures_and_keeps_going():
    bad = FakeUpstream("bad:53", fail_close=True)
    good = FakeUpstream("good:53")
    config = UpstreamConfig(upstreams=[bad, good])
    with pytest.raises(RuntimeError, match="failed to close some upstreams"):
        config.close()
    assert good.closed == 1


def test_context_manager_closes():
    up = FakeUpstream("1.1.1.1:53")
    with UpstreamConfig(upstreams=[up]) as config:
        assert config.upstreams == [up]
    assert up.closed == 1