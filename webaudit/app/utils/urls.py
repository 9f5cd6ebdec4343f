"""
URL canonicalization for crawling.

Canonical form: lowercase scheme and host, no fragment, no trailing
slash (except the root), tracking parameters removed and the remaining
query parameters sorted.
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
        "gclid", "gclsrc", "dclid", "fbclid", "msclkid", "igshid", "yclid",
        "mc_cid", "mc_eid", "_hsenc", "_hsmi", "ref", "_",
    }
)

_DYNAMIC_SEGMENT_RES = (
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I),
    re.compile(r"^\d+$"),
    re.compile(r"^[0-9a-f]{24}$", re.I),
)


def canonicalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """Canonical absolute http(s) URL, or None for anything else."""
    absolute = urljoin(base, url) if base else url
    try:
        parts = urlsplit(absolute)
    except ValueError:
        return None
    if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
        return None

    path = re.sub(r"/+$", "", parts.path) or "/"
    query = sorted(
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    )
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, urlencode(query), "")
    )


def same_origin(url: str, base: str) -> bool:
    a, b = urlsplit(url), urlsplit(base)
    return (a.scheme.lower(), a.netloc.lower()) == (b.scheme.lower(), b.netloc.lower())


def route_pattern(url: str) -> str:
    """Path with dynamic segments (ids, uuids, object ids) replaced by ':id'."""
    segments = urlsplit(url).path.split("/")
    return "/".join(
        ":id" if any(r.match(s) for r in _DYNAMIC_SEGMENT_RES) else s
        for s in segments
    ) or "/"
