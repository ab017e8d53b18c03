# Overview: Classifies product URLs (automatable retailer or not) and extracts ASINs.

from __future__ import annotations

import re
from urllib.parse import urlsplit


# Amazon retail domains: amazon.com, amazon.com.mx, amazon.co.uk, amazon.de, ...
_AMAZON_HOST = re.compile(r"(^|\.)amazon\.(com|co|[a-z]{2})(\.[a-z]{2})?$")
_SHORT_HOSTS = {"amzn.to", "a.co", "amzn.com"}

# Checked in order; the bare /<ASIN>/ pattern is the loosest.
_ASIN_PATTERNS = (
    re.compile(r"/dp/([A-Z0-9]{10})"),
    re.compile(r"/gp/product/([A-Z0-9]{10})"),
    re.compile(r"/([A-Z0-9]{10})(?:/|$|\?)"),
)

ASIN_RE = re.compile(r"^[A-Z0-9]{10}$")


def _host(url: str) -> str:
    try:
        host = urlsplit((url or "").strip()).hostname or ""
    except ValueError:
        return ""
    return host.lower()


def is_amazon_url(url: str) -> bool:
    """True when the URL points at an Amazon storefront or short link."""
    host = _host(url)
    if not host:
        return False
    return host in _SHORT_HOSTS or bool(_AMAZON_HOST.search(host))


def extract_asin(url: str) -> str | None:
    if not url:
        return None
    path = url
    for pattern in _ASIN_PATTERNS:
        match = pattern.search(path)
        if match:
            return match.group(1)
    return None


def is_valid_asin(value: str | None) -> bool:
    return bool(value) and bool(ASIN_RE.match(value))


def classify(url: str) -> tuple[bool, str | None]:
    """
    Returns (is_automatable, asin).

    Only Amazon URLs are automatable; the ASIN is only looked for on those.
    """
    if not is_amazon_url(url):
        return False, None
    return True, extract_asin(url)


def product_url_for(base_url: str, asin: str) -> str:
    return f"{base_url.rstrip('/')}/dp/{asin}"
