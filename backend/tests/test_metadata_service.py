"""
Product metadata extraction tests.

Pages are served by httpx.MockTransport; nothing touches the network.
"""

from decimal import Decimal

import httpx

from app.services import metadata_service


OG_PAGE = """
<html><head>
<title>Ergonomic Chair | Example Store</title>
<meta property="og:title" content="Ergonomic Chair - Example Store">
<meta property="og:site_name" content="Example Store">
<meta property="og:description" content="Mesh back, adjustable arms">
<meta property="og:image" content="/img/chair.jpg">
<meta property="og:price:amount" content="1,299.50">
<meta property="og:price:currency" content="MXN">
</head><body></body></html>
"""

AMAZON_PAGE = """
<html><head></head><body>
<span id="productTitle">  USB-C Hub 7 in 1  </span>
<img id="landingImage" src="https://m.media-amazon.com/images/I/hub.jpg">
<span class="a-price"><span class="a-offscreen">$499.00</span></span>
</body></html>
"""


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)


class TestParseHtml:
    def test_open_graph(self):
        meta = metadata_service.parse_html(OG_PAGE, "https://shop.example.com/p/1")
        assert meta.title == "Ergonomic Chair"
        assert meta.description == "Mesh back, adjustable arms"
        assert meta.image_url == "https://shop.example.com/img/chair.jpg"
        assert meta.price == Decimal("1299.50")
        assert meta.currency == "MXN"
        assert meta.site_name == "Example Store"
        assert meta.error is None

    def test_amazon_fallbacks(self):
        meta = metadata_service.parse_html(AMAZON_PAGE, "https://www.amazon.com.mx/dp/B08N5WRWNW")
        assert meta.title == "USB-C Hub 7 in 1"
        assert meta.image_url == "https://m.media-amazon.com/images/I/hub.jpg"
        assert meta.price == Decimal("499.00")
        assert meta.currency == "MXN"
        assert meta.site_name == "Amazon"

    def test_parse_price(self):
        assert metadata_service.parse_price("$1,234.56 MXN") == Decimal("1234.56")
        assert metadata_service.parse_price("USD 15") == Decimal("15.00")
        assert metadata_service.parse_price("free") is None
        assert metadata_service.parse_price("") is None


class TestExtractMetadata:
    def test_fetches_and_parses(self):
        def handler(request):
            return httpx.Response(200, text=OG_PAGE)

        with _client(handler) as client:
            meta = metadata_service.extract_metadata("https://shop.example.com/p/1", client=client)

        assert meta.error is None
        assert meta.title == "Ergonomic Chair"
        assert meta.to_dict()["price"] == "1299.50"

    def test_follows_redirect(self):
        def handler(request):
            if request.url.path == "/short":
                return httpx.Response(301, headers={"Location": "https://shop.example.com/p/1"})
            return httpx.Response(200, text=OG_PAGE)

        with _client(handler) as client:
            meta = metadata_service.extract_metadata("https://shop.example.com/short", client=client)

        assert meta.title == "Ergonomic Chair"
        assert meta.image_url == "https://shop.example.com/img/chair.jpg"

    def test_non_200_is_an_error_result(self):
        with _client(lambda request: httpx.Response(503)) as client:
            meta = metadata_service.extract_metadata("https://shop.example.com/p/1", client=client)

        assert meta.error == "unexpected status code: 503"
        assert meta.title == ""

    def test_network_error_is_an_error_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            meta = metadata_service.extract_metadata("https://shop.example.com/p/1", client=client)

        assert meta.error.startswith("failed to fetch URL")

    def test_rejects_non_http_url_without_fetching(self):
        meta = metadata_service.extract_metadata("ftp://shop.example.com/p/1")
        assert meta.error == "url must be an http(s) URL"
