"""Shared fixtures: zeroed delays, no credentials, fake HTTP via httpx.MockTransport."""

from typing import Callable, List, Optional

import httpx
import pytest

from sourcing import search_service
from sourcing.config import settings
from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider

FILLER = (
    "<p>"
    + "This product page describes a toy in detail, with specifications, "
    "age guidance and shipping information for families. " * 4
    + "</p>"
)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    for name in ("variant_delay_seconds", "retailer_delay_seconds", "batch_query_delay_seconds"):
        monkeypatch.setattr(settings, name, 0.0)
    monkeypatch.setattr(settings, "http_proxy_url", "")
    monkeypatch.setattr(settings, "google_cse_api_key", "")
    monkeypatch.setattr(settings, "google_cse_engine_id", "")
    monkeypatch.setattr(settings, "serper_api_key", "")
    monkeypatch.setattr(settings, "debug_html", False)
    monkeypatch.setattr(settings, "search_provider", "google-custom")
    monkeypatch.setattr(settings, "fallback_order", "bing,google-reader,duckduckgo")


@pytest.fixture
def mock_http(monkeypatch) -> Callable[[Callable[[httpx.Request], httpx.Response]], List[httpx.Request]]:
    """Installs a MockTransport-backed client as the shared one; returns the list of seen requests."""

    def install(handler):
        seen: List[httpx.Request] = []

        async def recording(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            res = handler(request)
            if hasattr(res, "__await__"):
                res = await res
            return res

        client = httpx.AsyncClient(transport=httpx.MockTransport(recording), follow_redirects=True)
        monkeypatch.setitem(search_service._HTTP_CLIENTS, "", client)
        return seen

    return install


class FakeProvider(SearchProvider):
    def __init__(
        self,
        name: str,
        *,
        kind: str = "scrape",
        urls: Optional[List[str]] = None,
        error: Optional[str] = None,
        raises: Optional[Exception] = None,
        available: bool = True,
        calls: Optional[list] = None,
    ):
        self.name = name
        self.kind = kind
        self.urls = urls or []
        self.error = error
        self.raises = raises
        self._available = available
        self.calls = calls if calls is not None else []

    def available(self) -> bool:
        return self._available

    async def search(self, query: str, limit: int) -> ProviderResult:
        self.calls.append(self.name)
        if self.raises is not None:
            raise self.raises
        trace = DiagnosticTrace()
        trace.note(f"{self.name} called")
        if self.error:
            return ProviderResult(error=self.error, trace=trace)
        return ProviderResult(candidates=[Candidate(url=u) for u in self.urls], trace=trace)

    async def search_site(self, query: str, site: str, limit: int) -> ProviderResult:
        self.calls.append(f"{self.name}:{site}")
        if self.error:
            return ProviderResult(error=self.error)
        return ProviderResult(candidates=[Candidate(url=u) for u in self.urls if site in u][:limit])
