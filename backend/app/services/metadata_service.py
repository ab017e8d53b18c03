# Overview: Best-effort product metadata extraction from a product page URL.

"""
Product Metadata Extraction

WHY: Request forms are pre-filled with title, image and price when the
product page exposes them. Enrichment is optional: request creation never
depends on it, and every failure comes back as an empty result with an
`error` string instead of an exception.

SOURCES (first non-empty wins, per field):
1. Open Graph tags (og:title, og:description, og:image, og:price:amount)
2. Twitter card tags
3. Standard <meta name="..."> tags, then <title>
4. Retailer-specific ids (#productTitle, #landingImage, price blocks)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from html.parser import HTMLParser
from urllib.parse import urljoin

import httpx

from . import url_classifier


FETCH_TIMEOUT_SECONDS = 15.0
MAX_REDIRECTS = 5

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "es-MX,es;q=0.9,en;q=0.8",
}

_PRICE_IDS = ("priceblock_ourprice", "priceblock_dealprice", "price_inside_buybox")
_TITLE_SEPARATORS = (" - ", " | ", " – ")
_NUMBER = re.compile(r"[\d.]+")


@dataclass
class ProductMetadata:
    title: str = ""
    description: str = ""
    image_url: str = ""
    price: Decimal | None = None
    currency: str = ""
    site_name: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["price"] = format(self.price, "f") if self.price is not None else None
        return data


class _PageParser(HTMLParser):
    """Collects meta tags, <title>, and a handful of id-addressed elements."""

    _TEXT_IDS = {"productTitle", *_PRICE_IDS}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.meta_property: dict[str, str] = {}
        self.meta_name: dict[str, str] = {}
        self.title = ""
        self.id_text: dict[str, str] = {}
        self.id_src: dict[str, str] = {}
        self.offscreen_price = ""
        self._capture: str | None = None
        self._in_title = False
        self._in_offscreen = False

    def handle_starttag(self, tag, attrs):
        attrs = {k: (v or "") for k, v in attrs}
        if tag == "meta":
            content = attrs.get("content", "").strip()
            prop = attrs.get("property")
            name = attrs.get("name")
            if prop and content:
                self.meta_property.setdefault(prop.lower(), content)
            if name and content:
                self.meta_name.setdefault(name.lower(), content)
            return
        if tag == "title" and not self.title:
            self._in_title = True
            return

        element_id = attrs.get("id")
        if element_id in self._TEXT_IDS and element_id not in self.id_text:
            self._capture = element_id
            self.id_text[element_id] = ""
        if tag == "img" and element_id and attrs.get("src"):
            self.id_src.setdefault(element_id, attrs["src"])
        if "a-offscreen" in attrs.get("class", "").split() and not self.offscreen_price:
            self._in_offscreen = True

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False
        if tag == "span":
            self._in_offscreen = False
        if self._capture and tag in ("span", "h1", "div", "td"):
            self._capture = None

    def handle_data(self, data):
        if self._in_title:
            self.title += data
        if self._capture:
            self.id_text[self._capture] += data
        if self._in_offscreen:
            self.offscreen_price += data


def parse_price(text: str) -> Decimal | None:
    """Strip currency symbols and thousands separators; None if nothing numeric."""
    if not text:
        return None
    cleaned = text.strip()
    for token in ("$", "USD", "MXN", "€", "£", ",", " ", "\u00a0"):
        cleaned = cleaned.replace(token, "")
    match = _NUMBER.search(cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group(0)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _clean_title(title: str, site_name: str) -> str:
    if not title or not site_name:
        return title
    for sep in _TITLE_SEPARATORS:
        idx = title.rfind(sep)
        if idx > 0:
            suffix = title[idx + len(sep):].strip()
            if site_name.lower() in suffix.lower():
                title = title[:idx].strip()
    return title


def parse_html(html: str, url: str) -> ProductMetadata:
    parser = _PageParser()
    parser.feed(html)
    parser.close()

    prop = parser.meta_property
    name = parser.meta_name
    meta = ProductMetadata(
        title=prop.get("og:title") or name.get("twitter:title") or name.get("title") or parser.title.strip(),
        description=prop.get("og:description") or name.get("twitter:description") or name.get("description") or "",
        image_url=prop.get("og:image") or name.get("twitter:image") or "",
        price=parse_price(prop.get("og:price:amount") or prop.get("product:price:amount") or ""),
        currency=prop.get("og:price:currency") or prop.get("product:price:currency") or "",
        site_name=prop.get("og:site_name") or "",
    )

    if url_classifier.is_amazon_url(url):
        if not meta.title:
            meta.title = parser.id_text.get("productTitle", "").strip()
        if meta.price is None:
            candidates = [parser.offscreen_price] + [parser.id_text.get(i, "") for i in _PRICE_IDS]
            for text in candidates:
                meta.price = parse_price(text)
                if meta.price is not None:
                    break
        if not meta.image_url:
            meta.image_url = parser.id_src.get("landingImage", "")
        meta.site_name = meta.site_name or "Amazon"

    if meta.image_url:
        meta.image_url = urljoin(url, meta.image_url)

    if not meta.currency:
        host = url.lower()
        if ".mx" in host:
            meta.currency = "MXN"
        elif ".com" in host:
            meta.currency = "USD"

    meta.title = _clean_title(meta.title, meta.site_name)
    return meta


def extract_metadata(url: str, client: httpx.Client | None = None) -> ProductMetadata:
    """
    Fetch `url` and extract product metadata.

    Never raises for network or parse problems; the result carries an
    `error` string instead.
    """
    if not url or not url.lower().startswith(("http://", "https://")):
        return ProductMetadata(error="url must be an http(s) URL")

    owns_client = client is None
    if owns_client:
        client = httpx.Client(
            timeout=FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers=BROWSER_HEADERS,
        )
    try:
        response = client.get(url)
        if response.status_code != 200:
            return ProductMetadata(error=f"unexpected status code: {response.status_code}")
        return parse_html(response.text, str(response.url))
    except httpx.HTTPError as exc:
        return ProductMetadata(error=f"failed to fetch URL: {exc}")
    finally:
        if owns_client:
            client.close()
