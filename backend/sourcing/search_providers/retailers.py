import asyncio
from typing import List, Optional, Sequence, Tuple

from sourcing.retailers import RETAILERS, RetailerSpec, dedupe_by_path, extract_product_urls, is_product_url, title_from_url
from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403


class RetailerSearchProvider(SearchProvider):
    """
    Поиск по самим ритейлерам (Walmart/Target/Amazon).

    Основной путь: site-поиск через структурный API, если ключи есть,
    иначе страница поиска ритейлера через reader-прокси.
    Если набралось меньше retailer_min_results, добираем «старым» путём
    (тот из двух, который ещё не пробовали).
    """

    name = "retailers"

    def __init__(
        self,
        api_providers: Optional[Sequence[SearchProvider]] = None,
        fallback_provider: Optional[SearchProvider] = None,
        retailers: Optional[Sequence[RetailerSpec]] = None,
    ) -> None:
        if api_providers is None:
            api_providers = [f() for f in _provider_factories().values() if f.kind == "api"]  # noqa: F405
        self.api_providers = list(api_providers)
        self.fallback_provider = fallback_provider or _provider_for_source("google-reader")  # noqa: F405
        self.retailers = list(retailers) if retailers is not None else list(RETAILERS.values())

    def _api(self) -> Optional[SearchProvider]:
        for p in self.api_providers:
            if p.available() and hasattr(p, "search_site"):
                return p
        return None

    async def search(self, query: str, limit: int) -> ProviderResult:
        trace = DiagnosticTrace()
        api = self._api()
        delay = settings.retailer_delay_seconds  # noqa: F405

        primary = await asyncio.gather(
            *(self._primary(spec, query, limit, api, i * delay) for i, spec in enumerate(self.retailers)),
            return_exceptions=True,
        )

        urls: List[str] = []
        scraped: List[bool] = []
        for spec, res in zip(self.retailers, primary):
            if isinstance(res, BaseException):
                logger.error("%s: failed: %s: %s", spec.display_name, type(res).__name__, res)  # noqa: F405
                trace.note(f"{spec.retailer.value} err: {type(res).__name__}: {res}")
                scraped.append(False)
                continue
            found, used_scrape, branch_trace = res
            trace.merge(branch_trace)
            trace.count(f"{self.name}:{spec.retailer.value}", len(found))
            urls.extend(found)
            scraped.append(used_scrape)

        urls = dedupe_by_path(urls)
        if len(urls) < settings.retailer_min_results:  # noqa: F405
            trace.note(f"{self.name}: {len(urls)} < {settings.retailer_min_results}, trying legacy path")  # noqa: F405
            legacy = await asyncio.gather(
                *(
                    self._legacy(spec, query, limit, used_scrape, i * delay)
                    for i, (spec, used_scrape) in enumerate(zip(self.retailers, scraped))
                ),
                return_exceptions=True,
            )
            for spec, res in zip(self.retailers, legacy):
                if isinstance(res, BaseException):
                    trace.note(f"{spec.retailer.value} legacy err: {type(res).__name__}: {res}")
                    continue
                found, branch_trace = res
                trace.merge(branch_trace)
                trace.count(f"{self.name}:{spec.retailer.value}:legacy", len(found))
                urls.extend(found)
            urls = dedupe_by_path(urls)

        candidates = [Candidate(url=u, title=title_from_url(u)) for u in urls]
        trace.count(self.name, len(candidates))
        return ProviderResult(candidates=candidates[: max(0, limit)], trace=trace)

    async def _primary(
        self,
        spec: RetailerSpec,
        query: str,
        limit: int,
        api: Optional[SearchProvider],
        delay: float,
    ) -> Tuple[List[str], bool, DiagnosticTrace]:
        trace = DiagnosticTrace()
        if delay:
            await asyncio.sleep(delay)
        if api is not None:
            res = await api.search_site(_augment_query(query), spec.domain, limit)  # noqa: F405
            trace.merge(res.trace)
            if res.ok:
                return [c.url for c in res.candidates if is_product_url(c.url)], False, trace
            trace.note(f"{spec.retailer.value}: {api.name} failed ({res.error}), scraping search page")
        return await self._scrape_search_page(spec, query, trace), True, trace

    async def _legacy(
        self,
        spec: RetailerSpec,
        query: str,
        limit: int,
        used_scrape: bool,
        delay: float,
    ) -> Tuple[List[str], DiagnosticTrace]:
        trace = DiagnosticTrace()
        if delay:
            await asyncio.sleep(delay)
        if not used_scrape:
            return await self._scrape_search_page(spec, query, trace), trace
        if self.fallback_provider is None or not hasattr(self.fallback_provider, "search_site"):
            return [], trace
        res = await self.fallback_provider.search_site(query, spec.domain, limit)
        trace.merge(res.trace)
        return [c.url for c in res.candidates if is_product_url(c.url)], trace

    async def _scrape_search_page(self, spec: RetailerSpec, query: str, trace: DiagnosticTrace) -> List[str]:
        provider = f"{self.name}:{spec.retailer.value}"
        for url in _reader_urls(spec.search_page(query)):  # noqa: F405
            status, text, title, final_url, err = await _fetch_with_httpx_status(  # noqa: F405
                provider, url, timeout=settings.serp_timeout_seconds  # noqa: F405
            )
            if err or not text or status >= 400:
                trace.note(f"{provider} {status or err}")
                continue
            reason = _block_reason(title, text)  # noqa: F405
            if reason:
                trace.note(f"{provider}: blocked ({reason})")
                trace.count(f"{provider}:blocked")
                continue
            found = extract_product_urls(spec.retailer, text)
            if found:
                return found
        return []
