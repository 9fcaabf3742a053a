import json

import httpx
import pytest

from conftest import FILLER
from sourcing.product_meta import (
    ProductRecord,
    extract_product_meta,
    parse_price,
    scrape_product_meta,
    to_catalog_draft,
)

WALMART_1 = "https://www.walmart.com/ip/lego-friends-mall/111"
TARGET_1 = "https://www.target.com/p/lego-friends-beach-house/-/A-222"


def _page(*blocks, head=""):
    scripts = "".join(
        f'<script type="application/ld+json">{b if isinstance(b, str) else json.dumps(b)}</script>' for b in blocks
    )
    return f"<html><head><title>Product</title>{head}{scripts}</head><body>{FILLER}</body></html>"


def test_structured_data_wins_over_url_slug():
    html = _page(
        {
            "@context": "https://schema.org",
            "@type": "Product",
            "name": "LEGO Friends Heartlake City Shopping Mall 41450",
            "image": ["https://i5.walmartimages.com/mall.jpg", "https://i5.walmartimages.com/other.jpg"],
            "brand": {"@type": "Brand", "name": "LEGO"},
            "model": "41450",
            "category": "Building Sets",
            "offers": {"@type": "Offer", "price": "79.99", "priceCurrency": "USD"},
        }
    )
    rec = extract_product_meta(html, WALMART_1)
    assert rec == ProductRecord(
        product_url=WALMART_1,
        title="LEGO Friends Heartlake City Shopping Mall 41450",
        image_url="https://i5.walmartimages.com/mall.jpg",
        price="79.99",
        retailer="Walmart",
        brand="LEGO",
        model="41450",
        category="Building Sets",
    )


def test_malformed_block_is_skipped_and_graph_is_followed():
    html = _page(
        "{not json",
        {
            "@context": "https://schema.org",
            "@graph": [
                {"@type": "WebPage", "isPartOf": {"@type": "WebSite", "name": "Target"}},
                {
                    "@type": ["Product", "Thing"],
                    "name": "Beach House",
                    "offers": [{"@type": "AggregateOffer", "lowPrice": 29.99}],
                    "image": {"@type": "ImageObject", "url": "https://target.scene7.com/beach.jpg"},
                },
            ],
        },
    )
    rec = extract_product_meta(html, TARGET_1)
    assert rec.title == "Beach House"
    assert rec.price == 29.99
    assert rec.image_url == "https://target.scene7.com/beach.jpg"
    assert rec.retailer == "Target"


def test_later_product_block_overrides_non_empty_fields():
    html = _page(
        {
            "@type": "Product",
            "name": "First",
            "brand": "Mattel",
            "offers": {"priceSpecification": {"price": "10.00"}},
        },
        {"@type": "Product", "name": "Second", "offers": {"price": "99.00"}},
        {"@type": "Product", "name": "", "offers": {}},
    )
    rec = extract_product_meta(html, WALMART_1)
    assert rec.title == "Second"
    assert rec.price == "99.00"
    assert rec.brand == "Mattel"


def test_og_image_is_only_a_fallback():
    og = '<meta property="og:image" content="https://cdn.example.com/og.jpg">'
    rec = extract_product_meta(_page(head=og), WALMART_1)
    assert rec.title == "Lego Friends Mall"
    assert rec.image_url == "https://cdn.example.com/og.jpg"

    structured = {"@type": "Product", "name": "Mall", "image": "https://i5.walmartimages.com/mall.jpg"}
    rec = extract_product_meta(_page(structured, head=og), WALMART_1)
    assert rec.image_url == "https://i5.walmartimages.com/mall.jpg"


def test_no_title_and_unknown_url_gives_none():
    assert extract_product_meta(_page(), "https://www.ebay.com/itm/1") is None
    assert extract_product_meta("", "https://www.amazon.com/dp/B0C1234567").title == "Amazon Product"


def test_publisher_names_retailer():
    html = _page({"@type": "Product", "name": "Mall", "publisher": {"@type": "Organization", "name": "Walmart.com"}})
    assert extract_product_meta(html, WALMART_1).retailer == "Walmart.com"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("$1,299.99", 1299.99),
        ("19.99 USD", 19.99),
        (24, 24.0),
        (0, None),
        ("free", None),
        (None, None),
        (True, None),
    ],
)
def test_parse_price(value, expected):
    assert parse_price(value) == expected


def test_to_catalog_draft():
    rec = ProductRecord(product_url=WALMART_1, title="Mall", price="$79.99", retailer="Walmart", brand="LEGO")
    draft = to_catalog_draft(rec, "girl")
    assert draft.title == "Mall"
    assert draft.gender == "girl"
    assert draft.price == 79.99
    assert draft.retailer == "walmart"
    assert draft.brand == "LEGO"
    assert draft.tags == []


@pytest.mark.asyncio
async def test_scrape_product_meta_reads_page_through_reader(mock_http):
    html = _page({"@type": "Product", "name": "Mall", "image": "https://i5.walmartimages.com/mall.jpg"})
    seen = mock_http(lambda request: httpx.Response(200, text=html))

    rec = await scrape_product_meta(WALMART_1)

    assert rec.title == "Mall"
    assert rec.image_url == "https://i5.walmartimages.com/mall.jpg"
    assert len(seen) == 1
    assert seen[0].headers["X-Return-Format"] == "html"


@pytest.mark.asyncio
async def test_scrape_product_meta_network_error_falls_back_to_heuristic(mock_http):
    def broken(request):
        raise httpx.ConnectError("unreachable", request=request)

    seen = mock_http(broken)
    rec = await scrape_product_meta(WALMART_1)
    assert len(seen) == 2
    assert rec == ProductRecord(product_url=WALMART_1, title="Lego Friends Mall", retailer="Walmart")


@pytest.mark.asyncio
async def test_scrape_product_meta_blocked_page_falls_back_to_heuristic(mock_http):
    page = "<html><title>Robot Check</title>" + FILLER + "</html>"
    seen = mock_http(lambda request: httpx.Response(200, text=page))
    rec = await scrape_product_meta(TARGET_1)
    assert len(seen) == 1
    assert rec.title == "Lego Friends Beach House"
    assert rec.image_url is None


@pytest.mark.asyncio
async def test_scrape_product_meta_keeps_product_on_page_with_recaptcha(mock_http):
    recaptcha = '<script src="https://www.google.com/recaptcha/api.js" async defer></script>'
    html = _page(
        {
            "@type": "Product",
            "name": "LEGO Friends Heartlake City Mall",
            "image": "https://i5.walmartimages.com/mall.jpg",
        },
        head=recaptcha,
    )
    mock_http(lambda request: httpx.Response(200, text=html))

    rec = await scrape_product_meta(WALMART_1)

    assert rec.title == "LEGO Friends Heartlake City Mall"
    assert rec.image_url == "https://i5.walmartimages.com/mall.jpg"


@pytest.mark.asyncio
async def test_scrape_product_meta_ignores_og_image_on_blocked_page(mock_http):
    og = '<meta property="og:image" content="https://cdn.example.com/captcha.png">'
    page = f"<html><head><title>Verify you are a human</title>{og}</head>{FILLER}</html>"
    mock_http(lambda request: httpx.Response(200, text=page))
    rec = await scrape_product_meta(WALMART_1)
    assert rec == ProductRecord(product_url=WALMART_1, title="Lego Friends Mall", retailer="Walmart")
