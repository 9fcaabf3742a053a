import json
from typing import List, Optional

from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"
GOOGLE_CSE_FIELDS = "items(title,link,snippet,displayLink),searchInformation(totalResults)"


class GoogleCustomSearchProvider(SearchProvider):
    name = "google-custom"
    kind = "api"

    def available(self) -> bool:
        return bool(settings.google_cse_api_key and settings.google_cse_engine_id)  # noqa: F405

    async def search(self, query: str, limit: int) -> ProviderResult:
        return await self._query(query, limit)

    async def search_site(self, query: str, site: str, limit: int) -> ProviderResult:
        return await self._query(query, limit, site=site)

    async def _query(self, query: str, limit: int, *, site: Optional[str] = None) -> ProviderResult:
        trace = DiagnosticTrace()
        if not self.available():
            return ProviderResult(error="Google Custom Search API credentials not configured", trace=trace)

        params = {
            "key": settings.google_cse_api_key,  # noqa: F405
            "cx": settings.google_cse_engine_id,  # noqa: F405
            "q": query,
            # API отдаёт максимум 10 результатов за запрос
            "num": str(max(1, min(10, int(limit or 10)))),
            "start": "1",
            "safe": "active",
            "fields": GOOGLE_CSE_FIELDS,
        }
        if site:
            params["siteSearch"] = site

        resp, err = await _request_with_timeout(  # noqa: F405
            self.name,
            "GET",
            GOOGLE_CSE_URL,
            timeout=settings.api_timeout_seconds,  # noqa: F405
            headers={"Accept": "application/json"},
            params=params,
        )
        if resp is None:
            trace.note(f"{self.name} err: {err}")
            return ProviderResult(error=err or "request failed", trace=trace)

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError):
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400 or "error" in data:
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            message = str(error.get("message") or f"HTTP {resp.status_code}")
            logger.error("%s: api error status=%s: %s", self.name, resp.status_code, message)  # noqa: F405
            return ProviderResult(error=message, trace=trace)

        items = self._parse_items(data)
        trace.count(f"{self.name}:items", len(items))
        return ProviderResult(candidates=items[: max(0, limit)], trace=trace)

    def _parse_items(self, data: dict) -> List[Candidate]:
        out: List[Candidate] = []
        for it in data.get("items") or []:
            if not isinstance(it, dict):
                continue
            link = _first_http_url(str(it.get("link") or ""))  # noqa: F405
            if not link:
                continue
            out.append(
                Candidate(
                    url=link,
                    title=_clean_title(str(it.get("title") or "")) or None,  # noqa: F405
                    snippet=_clean_title(str(it.get("snippet") or "")) or None,  # noqa: F405
                )
            )
        return out
