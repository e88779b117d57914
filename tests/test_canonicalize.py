import pytest

from linkscan.app.canonicalize import InvalidUrlError, canonicalize, host_of


def test_default_scheme_and_path():
    assert canonicalize("example.com") == "http://example.com/"


def test_scheme_relative_url_gets_default_scheme():
    assert canonicalize("//example.com/x") == "http://example.com/x"
    assert canonicalize("//Example.com") == "http://example.com/"


def test_query_order_does_not_matter():
    assert canonicalize("http://a.com/p?b=2&a=1") == canonicalize("http://a.com/p?a=1&b=2")
    assert canonicalize("http://a.com/p?b=2&a=1") == "http://a.com/p?a=1&b=2"


def test_scheme_and_host_lowercased_path_kept():
    assert canonicalize("HTTPS://WWW.Example.COM/Some/Path") == "https://www.example.com/Some/Path"


def test_whitespace_trimmed_and_fragment_dropped():
    assert canonicalize("  http://example.com/a?x=1#section  ") == "http://example.com/a?x=1"


def test_idna_host():
    assert canonicalize("http://bücher.de/") == "http://xn--bcher-kva.de/"


def test_query_values_are_not_reencoded_or_deduplicated():
    assert canonicalize("http://a.com/?b=%41&a=X&a=X") == "http://a.com/?a=X&a=X&b=%41"


def test_empty_query_is_dropped():
    assert canonicalize("http://a.com/p?") == "http://a.com/p"


def test_port_and_userinfo_are_not_part_of_the_host():
    assert canonicalize("http://user:pw@Example.com:8080/x") == "http://example.com/x"


def test_ipv6_literal_stays_parseable():
    canon = canonicalize("http://[::1]:8080/x")
    assert canon == "http://[::1]/x"
    assert canonicalize(canon) == canon
    assert host_of(canon) == "::1"


@pytest.mark.parametrize("raw", [
    "example.com",
    "HTTP://Example.com/a/b?z=1&y=2&x",
    "https://xn--bcher-kva.de/path?q=%20",
    "http://bücher.de/?b&a",
    "ftp://files.example.org",
])
def test_canonicalize_is_idempotent(raw):
    once = canonicalize(raw)
    assert canonicalize(once) == once


@pytest.mark.parametrize("raw", [
    "",
    "   ",
    None,
    "http://",
    "http://exa mple.com/",
    "http://a.com:99999/",
    "http://a.com:port/",
    "http://[::1/",
    "http://a..b/",
])
def test_invalid_urls_raise(raw):
    with pytest.raises(InvalidUrlError):
        canonicalize(raw)


def test_invalid_url_error_is_a_value_error():
    with pytest.raises(ValueError) as exc:
        canonicalize("http://")
    assert "Invalid URL" in str(exc.value)


def test_host_of():
    assert host_of("http://example.com/a?b=1") == "example.com"
