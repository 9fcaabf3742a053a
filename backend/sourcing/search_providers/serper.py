import json
from typing import List, Optional

from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403

SERPER_URL = "https://google.serper.dev/search"


class SerperProvider(SearchProvider):
    name = "serper"
    kind = "api"

    def available(self) -> bool:
        return bool(settings.serper_api_key)  # noqa: F405

    async def search(self, query: str, limit: int) -> ProviderResult:
        return await self._query(query, limit)

    async def search_site(self, query: str, site: str, limit: int) -> ProviderResult:
        return await self._query(query, limit, site=site)

    async def _query(self, query: str, limit: int, *, site: Optional[str] = None) -> ProviderResult:
        trace = DiagnosticTrace()
        if not self.available():
            return ProviderResult(error="Serper API key not configured", trace=trace)

        body = {
            "q": f"site:{site} {query}" if site else query,
            "num": max(1, int(limit or 10)),
            "page": 1,
            "location": "United States",
        }
        resp, err = await _request_with_timeout(  # noqa: F405
            self.name,
            "POST",
            SERPER_URL,
            timeout=settings.api_timeout_seconds,  # noqa: F405
            headers={"X-API-KEY": settings.serper_api_key, "Content-Type": "application/json"},  # noqa: F405
            json_body=body,
        )
        if resp is None:
            trace.note(f"{self.name} err: {err}")
            return ProviderResult(error=err or "request failed", trace=trace)

        if resp.status_code >= 400:
            text = _httpx_decode(resp).strip()  # noqa: F405
            message = text[:300] or f"HTTP {resp.status_code}"
            try:
                data = json.loads(text)
                if isinstance(data, dict) and data.get("message"):
                    message = str(data["message"])
            except (json.JSONDecodeError, ValueError):
                pass
            logger.error("%s: api error status=%s: %s", self.name, resp.status_code, message)  # noqa: F405
            return ProviderResult(error=message, trace=trace)

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            return ProviderResult(error=f"invalid json: {e}", trace=trace)

        items = self._parse_organic(data if isinstance(data, dict) else {})
        trace.count(f"{self.name}:items", len(items))
        return ProviderResult(candidates=items[: max(0, limit)], trace=trace)

    def _parse_organic(self, data: dict) -> List[Candidate]:
        out: List[Candidate] = []
        for it in data.get("organic") or []:
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
