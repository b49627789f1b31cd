"""Tests for domain normalization and composite site keys."""
import pytest

from backend.features.sites.domain import normalize_domain, site_key


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("https://www.YouTube.com/watch?v=abc", "youtube.com"),
        ("http://reddit.com/r/python#top", "reddit.com"),
        ("WWW.Twitter.com", "twitter.com"),
        ("news.ycombinator.com:443/item?id=1", "news.ycombinator.com"),
        ("m.facebook.com/", "m.facebook.com"),
        ("example.com.", "example.com"),
        ("localhost:3000/dashboard", "localhost"),
        ("192.168.1.20:8080", "192.168.1.20"),
        ("  Example.ORG  ", "example.org"),
        ("https://xn--bcher-kva.ch/a?x=1", "xn--bcher-kva.ch"),
        ("https://www.my--site.com:8080/b", "my--site.com"),
        ("http://xn--e1afmkfd.xn--p1ai/", "xn--e1afmkfd.xn--p1ai"),
    ],
)
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected


def test_invalid_input_falls_back_to_lowercased_raw():
    assert normalize_domain("Not A Domain") == "not a domain"


def test_empty_input():
    assert normalize_domain("") == ""
    assert normalize_domain(None) == ""


def test_normalization_is_idempotent():
    once = normalize_domain("https://www.www.example.com/path")
    assert normalize_domain(once) == once


def test_site_key_uses_normalized_domain():
    assert site_key("u1", "https://www.YouTube.com/feed") == "u1_youtube.com"
    assert site_key("u1", "youtube.com") == site_key("u1", "http://youtube.com/")


@pytest.mark.parametrize("raw", ["-bad.com/x", "bad-.com/x", "under_score.com/x"])
def test_malformed_labels_fall_back(raw):
    assert normalize_domain(raw) == raw


def test_hyphenated_hosts_share_one_key_across_paths():
    assert site_key("u1", "https://my--site.com/a?x=1") == site_key("u1", "my--site.com:8080/b")
