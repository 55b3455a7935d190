import pytest

from dnsrelay.upstream_base import Options, UpstreamError
from dnsrelay.upstream_config import (
    UNQUALIFIED_NAMES,
    UpstreamConfig,
    parse_upstream_line,
    parse_upstreams_config,
    validate_domain_name,
)


def _options():
    return Options(insecure_skip_verify=False, bootstrap=[], timeout=1.0)


@pytest.fixture
def config():
    lines = [
        "[/google.com/local/]4.3.2.1",
        "[/www.google.com//]1.2.3.4",
        "[/maps.google.com/]#",
        "[/www.google.com/]tls://1.1.1.1",
    ]
    return parse_upstreams_config(lines, _options())


@pytest.mark.parametrize(
    "domain, addresses",
    [
        ("www.google.com.", ["1.2.3.4:53", "tls://1.1.1.1:853"]),
        ("www2.google.com.", ["4.3.2.1:53"]),
        ("internal.local.", ["4.3.2.1:53"]),
        ("google.", ["1.2.3.4:53"]),
        ("maps.google.com.", []),
    ],
)
def test_get_upstreams_for_domain(config, domain, addresses):
    ups = config.upstreams_for_domain(domain)
    assert len(ups) == len(addresses)
    assert [u.address for u in ups] == addresses


def test_lookup_is_case_insensitive(config):
    ups = config.upstreams_for_domain("WWW.Google.COM.")
    assert [u.address for u in ups] == ["1.2.3.4:53", "tls://1.1.1.1:853"]


def test_get_upstreams_for_domain_without_duplicates():
    config = parse_upstreams_config(
        ["[/example.com/]1.1.1.1", "[/example.org/]1.1.1.1"], _options()
    )
    assert len(config.upstreams) == 0
    assert len(config.domain_reserved_upstreams) == 2
    u1 = config.domain_reserved_upstreams["example.com."][0]
    u2 = config.domain_reserved_upstreams["example.org."][0]
    assert u1 is u2


def test_default_upstreams_only():
    config = parse_upstreams_config(["1.1.1.1", "8.8.8.8:53"])
    assert [u.address for u in config.upstreams] == ["1.1.1.1:53", "8.8.8.8:53"]
    assert config.domain_reserved_upstreams == {}
    ups = config.upstreams_for_domain("anything.example.com.")
    assert [u.address for u in ups] == ["1.1.1.1:53", "8.8.8.8:53"]


def test_excluded_domain_falls_back_to_defaults():
    config = parse_upstreams_config(
        ["[/host.com/]1.2.3.4", "[/maps.host.com/]#", "3.4.5.6"], _options()
    )
    assert config.domain_reserved_upstreams["maps.host.com."] is None
    assert [u.address for u in config.upstreams_for_domain("a.maps.host.com.")] == [
        "3.4.5.6:53"
    ]
    assert [u.address for u in config.upstreams_for_domain("mail.host.com.")] == [
        "1.2.3.4:53"
    ]
    assert [u.address for u in config.upstreams_for_domain("other.org.")] == [
        "3.4.5.6:53"
    ]


def test_reservation_after_exclusion_overrides_it():
    config = parse_upstreams_config(
        ["[/host.com/]#", "[/host.com/]1.2.3.4"], _options()
    )
    ups = config.upstreams_for_domain("www.host.com.")
    assert [u.address for u in ups] == ["1.2.3.4:53"]


def test_empty_config_has_no_upstreams():
    config = UpstreamConfig()
    assert config.upstreams_for_domain("example.com.") == []


def test_parse_upstream_line_plain():
    assert parse_upstream_line("8.8.8.8:53") == ("8.8.8.8:53", [])


def test_parse_upstream_line_domains_lowercased():
    address, hosts = parse_upstream_line("[/Example.COM/local/]tls://1.1.1.1")
    assert address == "tls://1.1.1.1"
    assert hosts == ["example.com.", "local."]


def test_parse_upstream_line_unqualified():
    address, hosts = parse_upstream_line("[/www.google.com//]1.2.3.4")
    assert address == "1.2.3.4"
    assert hosts == ["www.google.com.", UNQUALIFIED_NAMES]


def test_parse_upstream_line_wrong_specification():
    with pytest.raises(ValueError, match="wrong upstream specification"):
        parse_upstream_line("[/example.org1.1.1.1")


def test_parse_upstream_line_bad_domain():
    with pytest.raises(ValueError):
        parse_upstream_line("[/-bad-/]1.1.1.1")


def test_parse_config_bad_upstream():
    with pytest.raises(UpstreamError, match="cannot prepare the upstream"):
        parse_upstreams_config(["asdf://1.1.1.1"], _options())


def test_parse_config_bad_line():
    with pytest.raises(ValueError):
        parse_upstreams_config(["[/a/]b/]c"], _options())


def test_validate_domain_name_ok():
    assert validate_domain_name("google.com") == "google.com"
    assert validate_domain_name("local") == "local"


def test_validate_domain_name_idna():
    assert validate_domain_name("bücher.example").startswith("xn--")


@pytest.mark.parametrize(
    "name",
    ["", "a" * 64 + ".com", "-bad.com", "bad-.com", "bad..com", "a_b.com", "a b.com"],
)
def test_validate_domain_name_bad(name):
    with pytest.raises(ValueError):
        validate_domain_name(name)


def test_validate_domain_name_too_long():
    name = ".".join(["a" * 60] * 5)
    with pytest.raises(ValueError):
        validate_domain_name(name)