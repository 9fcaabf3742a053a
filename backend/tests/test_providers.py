import asyncio
import json
from urllib.parse import unquote

import httpx
import pytest

from conftest import FILLER, FakeProvider
from sourcing.config import settings
from sourcing.search_providers.bing import BingRssProvider
from sourcing.search_providers.duckduckgo import DuckDuckGoHtmlProvider
from sourcing.search_providers.google_custom import GoogleCustomSearchProvider
from sourcing.search_providers.google_reader import GoogleReaderProvider
from sourcing.search_providers.retailers import RetailerSearchProvider
from sourcing.search_providers.serper import SerperProvider
from sourcing.search_service import is_quota_exceeded

WALMART_1 = "https://www.walmart.com/ip/lego-friends-mall/111"
TARGET_1 = "https://www.target.com/p/lego-friends-beach-house/-/A-222"
AMAZON_1 = "https://www.amazon.com/LEGO-Friends-Camper-Van/dp/B0C1234567"


@pytest.fixture
def cse_keys(monkeypatch):
    monkeypatch.setattr(settings, "google_cse_api_key", "key")
    monkeypatch.setattr(settings, "google_cse_engine_id", "cx")


@pytest.mark.asyncio
async def test_google_custom_parses_items(mock_http, cse_keys):
    seen = mock_http(
        lambda request: httpx.Response(
            200,
            json={
                "items": [
                    {"title": "LEGO Friends Mall", "link": WALMART_1, "snippet": "Shop now"},
                    {"title": "no link"},
                ]
            },
        )
    )

    res = await GoogleCustomSearchProvider().search_site("lego friends", "walmart.com", 50)

    params = seen[0].url.params
    assert params["num"] == "10"
    assert params["siteSearch"] == "walmart.com"
    assert params["safe"] == "active"
    assert params["cx"] == "cx"
    assert res.error is None
    assert [(c.url, c.title, c.snippet) for c in res.candidates] == [(WALMART_1, "LEGO Friends Mall", "Shop now")]


@pytest.mark.asyncio
async def test_google_custom_error_message_surfaces(mock_http, cse_keys):
    message = "Quota exceeded for quota metric 'Queries' and limit 'Queries per day'"
    mock_http(lambda request: httpx.Response(429, json={"error": {"code": 429, "message": message}}))

    res = await GoogleCustomSearchProvider().search("lego", 10)

    assert res.candidates == []
    assert res.error == message
    assert is_quota_exceeded(res.error)


@pytest.mark.asyncio
async def test_google_custom_without_credentials_makes_no_request(mock_http):
    seen = mock_http(lambda request: httpx.Response(200, json={}))
    provider = GoogleCustomSearchProvider()
    assert provider.available() is False
    res = await provider.search("lego", 10)
    assert res.error == "Google Custom Search API credentials not configured"
    assert seen == []


@pytest.mark.asyncio
async def test_serper_posts_site_restricted_query(mock_http, monkeypatch):
    monkeypatch.setattr(settings, "serper_api_key", "sk")
    seen = mock_http(
        lambda request: httpx.Response(200, json={"organic": [{"title": "Beach House", "link": TARGET_1}]})
    )

    res = await SerperProvider().search_site("lego", "target.com", 10)

    assert seen[0].method == "POST"
    assert seen[0].headers["X-API-KEY"] == "sk"
    body = json.loads(seen[0].content)
    assert body["q"] == "site:target.com lego"
    assert body["num"] == 10
    assert [c.url for c in res.candidates] == [TARGET_1]


@pytest.mark.asyncio
async def test_serper_error_body_becomes_error(mock_http, monkeypatch):
    monkeypatch.setattr(settings, "serper_api_key", "sk")
    mock_http(lambda request: httpx.Response(403, json={"message": "Not enough credits", "statusCode": 403}))
    res = await SerperProvider().search("lego", 10)
    assert res.error == "Not enough credits"


def _rss(*items):
    body = "".join(
        f"<item><title>{t}</title><link>{u}</link><description>{d}</description></item>" for t, u, d in items
    )
    return f'<?xml version="1.0" encoding="utf-8"?><rss version="2.0"><channel><title>Bing</title>{body}</channel></rss>'


@pytest.mark.asyncio
async def test_bing_tries_next_variant_when_nothing_allow_listed(mock_http):
    pages = [
        _rss(("Lego review", "https://www.someblog.com/lego", "blog")),
        _rss(
            ("LEGO Friends Mall - Walmart.com", WALMART_1, "Buy &lt;b&gt;LEGO&lt;/b&gt; Friends"),
            ("Other", "https://www.someblog.com/other", "x"),
        ),
    ]
    seen = mock_http(lambda request: httpx.Response(200, text=pages[len(seen) - 1]))

    res = await BingRssProvider().search("lego friends", 10)

    assert len(seen) == 2
    assert "site:walmart.com" in seen[1].url.params["q"]
    assert [(c.url, c.title, c.snippet) for c in res.candidates] == [
        (WALMART_1, "LEGO Friends Mall - Walmart.com", "Buy LEGO Friends")
    ]


@pytest.mark.asyncio
async def test_bing_loose_parse_on_broken_xml(mock_http):
    text = (
        "<rss><channel><item><title><![CDATA[LEGO&nbsp;Mall]]></title>"
        f"<link>{TARGET_1}</link><description>&nbsp;cool</description></item></channel></rss>"
    )
    mock_http(lambda request: httpx.Response(200, text=text))
    res = await BingRssProvider().search("lego", 10)
    assert [(c.url, c.title) for c in res.candidates] == [(TARGET_1, "LEGO Mall")]


GOOGLE_READER_TEXT = f"""Title: lego friends - Google Search

URL Source: http://www.google.com/search?q=lego+friends

Markdown Content:
LEGO Friends Heartlake City Shopping Mall - Walmart.com
{WALMART_1}
Free shipping on orders over $35.
Some blog
https://www.someblog.com/lego
blog snippet
[LEGO Friends Beach House]({TARGET_1})
[Camper](https://www.google.com/url?q={AMAZON_1}&sa=U)
"""


@pytest.mark.asyncio
async def test_google_reader_parses_lines_and_markdown_links(mock_http):
    seen = mock_http(lambda request: httpx.Response(200, text=GOOGLE_READER_TEXT))

    res = await GoogleReaderProvider().search("lego friends", 10)

    assert str(seen[0].url).startswith("https://r.jina.ai/http/")
    assert [c.url for c in res.candidates] == [WALMART_1, TARGET_1, AMAZON_1]
    assert res.candidates[0].title == "LEGO Friends Heartlake City Shopping Mall - Walmart.com"
    assert res.candidates[0].snippet == "Free shipping on orders over $35."


@pytest.mark.asyncio
async def test_google_reader_block_page_is_soft_failure(mock_http):
    page = "<html><title>Sorry...</title>Our systems have detected unusual traffic. " + FILLER
    seen = mock_http(lambda request: httpx.Response(200, text=page))

    res = await GoogleReaderProvider().search("lego friends", 10)

    assert res.error is None
    assert res.candidates == []
    # два варианта запроса x два адреса reader
    assert len(seen) == 4
    assert res.trace.counts["google-reader:blocked"] == 4
    assert "google-reader: blocked (marker 'unusual traffic')" in res.trace.notes


DDG_HTML = (
    "<html><head><title>lego at DuckDuckGo</title></head><body>"
    '<div class="result results_links"><h2 class="result__title">'
    '<a rel="nofollow" class="result__a" href="//duckduckgo.com/l/?uddg='
    'https%3A%2F%2Fwww.target.com%2Fp%2Flego-friends-beach-house%2F-%2FA-222&amp;rut=abc">'
    "LEGO Friends Beach House : Target</a></h2>"
    '<a class="result__snippet" href="#">Shop LEGO Friends.</a></div>'
    '<div class="result"><h2><a class="result__a" href="https://www.someblog.com/x">Blog</a></h2></div>'
    + FILLER
    + "</body></html>"
)


@pytest.mark.asyncio
async def test_duckduckgo_unwraps_redirects(mock_http):
    seen = mock_http(lambda request: httpx.Response(200, text=DDG_HTML))

    res = await DuckDuckGoHtmlProvider().search("lego friends", 10)

    assert seen[0].url.host == "html.duckduckgo.com"
    assert [(c.url, c.title, c.snippet) for c in res.candidates] == [
        (TARGET_1, "LEGO Friends Beach House : Target", "Shop LEGO Friends.")
    ]


@pytest.mark.asyncio
async def test_timeout_is_local_and_noted(mock_http, monkeypatch):
    monkeypatch.setattr(settings, "serp_timeout_seconds", 0.05)

    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, text=DDG_HTML)

    mock_http(slow)
    res = await DuckDuckGoHtmlProvider().search("lego friends", 10)
    assert res.error is None
    assert res.candidates == []
    assert any("timeout after" in n for n in res.trace.notes)


@pytest.mark.asyncio
async def test_transport_error_is_local(mock_http):
    def broken(request):
        raise httpx.ConnectError("unreachable", request=request)

    mock_http(broken)
    res = await BingRssProvider().search("lego", 10)
    assert res.candidates == []
    assert any("ConnectError" in n for n in res.trace.notes)


def _retailer_pages(request):
    url = unquote(str(request.url))
    if "walmart.com/search" in url:
        return httpx.Response(
            200, text=f"[LEGO Friends Mall]({WALMART_1}) and [Barbie](/ip/barbie-dreamhouse/222) " + FILLER
        )
    if "target.com/s?searchTerm" in url:
        return httpx.Response(200, text="<title>Access Denied</title>" + FILLER)
    if "amazon.com/s?k=" in url:
        return httpx.Response(200, text=f"{AMAZON_1} " + FILLER)
    return httpx.Response(404, text="")


@pytest.mark.asyncio
async def test_retailer_search_scrapes_pages_and_tops_up_with_legacy_path(mock_http):
    seen = mock_http(_retailer_pages)
    fallback = FakeProvider(
        "google-reader",
        urls=["https://www.target.com/p/lego-mall/-/A-333", "https://www.target.com/c/lego/-/N-5", WALMART_1],
    )
    provider = RetailerSearchProvider(api_providers=[], fallback_provider=fallback)

    res = await provider.search("lego friends", 20)

    assert [c.url for c in res.candidates] == [
        WALMART_1,
        "https://www.walmart.com/ip/barbie-dreamhouse/222",
        AMAZON_1,
        "https://www.target.com/p/lego-mall/-/A-333",
    ]
    assert res.candidates[0].title == "Lego Friends Mall"
    assert set(fallback.calls) == {"google-reader:walmart.com", "google-reader:target.com", "google-reader:amazon.com"}
    assert "retailers:target: blocked (marker 'access denied')" in res.trace.notes
    assert "retailers: 3 < 5, trying legacy path" in res.trace.notes
    # target: оба адреса reader заблокированы
    assert sum(1 for r in seen if "target.com" in unquote(str(r.url))) == 2


@pytest.mark.asyncio
async def test_retailer_search_prefers_site_restricted_api(mock_http, monkeypatch):
    monkeypatch.setattr(settings, "retailer_min_results", 3)
    seen = mock_http(lambda request: httpx.Response(500, text=""))
    api = FakeProvider(
        "google-custom",
        kind="api",
        urls=[
            WALMART_1,
            "https://www.walmart.com/cp/toys/1",
            TARGET_1,
            "https://www.target.com/p/doll/-/A-9",
            AMAZON_1,
        ],
    )
    res = await RetailerSearchProvider(api_providers=[api], fallback_provider=None).search("lego", 20)

    assert seen == []
    assert [c.url for c in res.candidates] == [WALMART_1, TARGET_1, "https://www.target.com/p/doll/-/A-9", AMAZON_1]
    assert api.calls == ["google-custom:walmart.com", "google-custom:target.com", "google-custom:amazon.com"]


@pytest.mark.asyncio
async def test_retailer_search_api_failure_falls_back_to_pages(mock_http, monkeypatch):
    monkeypatch.setattr(settings, "retailer_min_results", 1)
    mock_http(_retailer_pages)
    api = FakeProvider("serper", kind="api", error="Not enough credits")

    res = await RetailerSearchProvider(api_providers=[api], fallback_provider=None).search("lego", 20)

    assert WALMART_1 in [c.url for c in res.candidates]
    assert "walmart: serper failed (Not enough credits), scraping search page" in res.trace.notes
