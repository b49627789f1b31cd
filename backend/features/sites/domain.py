"""Domain normalization and composite site keys."""
import re
from typing import Optional

_SCHEME_RE = re.compile(r"^https?://")
# Labels may hold repeated hyphens (punycode `xn--`); no leading or trailing hyphen
_HOSTNAME_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+(?:[a-z]{2,63}|xn--[a-z0-9-]{1,59})$")
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")


def _extract_host(value: str) -> str:
    host = _SCHEME_RE.sub("", value)
    for sep in ("/", "?", "#"):
        host = host.split(sep, 1)[0]
    host = host.split(":", 1)[0]
    host = host.rstrip(".")
    # Repeated so that normalizing twice never strips another label
    while host.startswith("www.") and len(host) > 4:
        host = host[4:]
    return host


def is_valid_host(host: str) -> bool:
    return bool(host == "localhost" or _IPV4_RE.match(host) or _HOSTNAME_RE.match(host))


def normalize_domain(raw: Optional[str]) -> str:
    """
    Canonicalize a URL or domain into a lowercase host.

    Strips scheme, ``www.``, path, query, fragment and port. Input that does
    not yield a valid host falls back to the lowercased raw string, so keys
    built from the same bad input stay deterministic.
    """
    if not raw:
        return ""
    fallback = raw.strip().lower()
    try:
        host = _extract_host(fallback)
    except (AttributeError, TypeError):
        return fallback
    if host and is_valid_host(host):
        return host
    return fallback


def site_key(user_id: str, raw: str) -> str:
    """Composite key `{user_id}_{normalized_domain}`."""
    return f"{user_id}_{normalize_domain(raw)}"
