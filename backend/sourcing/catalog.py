"""
Сборка каталога поверх поискового пайплайна.

discover_products: кандидаты → метаданные по каждому → проверка картинки → дедуп.
generate_fast_catalog: курируемые игрушки + обогащение реальными карточками
(только для верхних enrich_limit строк, чтобы не плодить внешние запросы).
"""

import asyncio
import re
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from sourcing.config import settings
from sourcing.image_validation import validate_image_url
from sourcing.product_meta import CatalogDraft, ProductRecord, parse_price, scrape_product_meta, to_catalog_draft
from sourcing.search_providers.base import DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_service import (
    ProviderOrchestrator,
    _finalize_candidates,
    _provider_for_source,
    gather_candidates,
    search_candidates,
    logger,
)
from sourcing.toy_data import POPULAR_TOYS, Gender, PopularToy, get_trending_toys

T = TypeVar("T")


def normalize_title(title: Optional[str]) -> str:
    t = (title or "").lower()
    t = re.sub(r"[^\w\s]", " ", t)
    return re.sub(r"\s+", " ", t).strip()


def dedupe_by_title(items: Iterable[T], key: Callable[[T], Optional[str]] = lambda x: x.title) -> List[T]:
    seen: set[str] = set()
    out: List[T] = []
    for it in items:
        k = normalize_title(key(it))
        if k in seen:
            continue
        seen.add(k)
        out.append(it)
    return out


@dataclass
class DiscoveryResult:
    records: List[ProductRecord] = field(default_factory=list)
    trace: DiagnosticTrace = field(default_factory=DiagnosticTrace)
    found: int = 0
    scraped: int = 0


async def discover_products(
    query: str,
    limit: Optional[int] = None,
    *,
    orchestrator: Optional[ProviderOrchestrator] = None,
    fan_out: bool = True,
) -> DiscoveryResult:
    result = DiscoveryResult()
    trace = result.trace
    limit = limit or settings.max_candidates
    try:
        if fan_out:
            found = await gather_candidates(query, settings.max_candidates, orchestrator=orchestrator)
        else:
            found = await (
                orchestrator.search(query, settings.max_candidates)
                if orchestrator is not None
                else search_candidates(query, settings.max_candidates)
            )
        trace.merge(found.trace)
        urls = [c.url for c in found.candidates]
        result.found = len(urls)

        metas = await asyncio.gather(*(scrape_product_meta(u) for u in urls), return_exceptions=True)
        records: List[ProductRecord] = []
        for url, meta in zip(urls, metas):
            if isinstance(meta, BaseException):
                trace.note(f"meta err: {url}: {type(meta).__name__}: {meta}")
                continue
            if meta is None:
                trace.count("meta:none")
                continue
            records.append(meta)
        result.scraped = len(records)
        trace.count("meta:records", len(records))

        with_image = [r for r in records if r.image_url]
        trace.count("images:missing", len(records) - len(with_image))
        checks = await asyncio.gather(*(validate_image_url(r.image_url) for r in with_image), return_exceptions=True)
        valid = [r for r, ok in zip(with_image, checks) if ok is True]
        trace.count("images:invalid", len(with_image) - len(valid))

        result.records = dedupe_by_title(valid)[:limit]
        trace.note(f"discover: {len(result.records)} records from {result.found} candidates")
    except Exception as e:
        logger.error("discover: failed: %s: %s", type(e).__name__, e)
        trace.note(f"discover err: {type(e).__name__}: {e}")
    return result


@dataclass
class CatalogRow:
    tmp_id: str
    title: str
    brand: str
    category: str
    gender: str
    popularity: int
    keywords: List[str] = field(default_factory=list)
    is_from_curated_list: bool = True
    price: Optional[float] = None
    retailer: Optional[str] = None
    product_url: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class FastCatalogStats:
    curated_count: int
    enriched_count: int
    total_unique: int


@dataclass
class FastCatalogResult:
    rows: List[CatalogRow]
    stats: FastCatalogStats
    trace: DiagnosticTrace = field(default_factory=DiagnosticTrace)


def _row_from_toy(toy: PopularToy, index: int) -> CatalogRow:
    return CatalogRow(
        tmp_id=f"curated_{index}",
        title=toy.title,
        brand=toy.brand,
        category=toy.category.value,
        gender=toy.gender.value,
        popularity=toy.popularity,
        keywords=list(toy.keywords),
        price=toy.price_min,
    )


def _gender_filter(gender: str) -> Optional[str]:
    # neutral означает "без фильтра по полу"
    return None if gender == Gender.NEUTRAL.value else gender


def _default_sources() -> List[SearchProvider]:
    from sourcing.search_providers.retailers import RetailerSearchProvider

    sources = [_provider_for_source("google-reader"), _provider_for_source("bing"), RetailerSearchProvider()]
    return [s for s in sources if s is not None]


Finder = Callable[[PopularToy], Awaitable[Tuple[Dict[str, object], DiagnosticTrace]]]


async def find_product_for_toy(
    toy: PopularToy,
    *,
    sources: Optional[Sequence[SearchProvider]] = None,
) -> Tuple[Dict[str, object], DiagnosticTrace]:
    """
    Ищет реальную карточку товара для игрушки.
    Пустой dict: ничего пригодного (это не ошибка).
    """
    trace = DiagnosticTrace()
    query = f"{toy.title} {toy.brand}".strip()
    sources = list(sources) if sources is not None else _default_sources()

    results = await asyncio.gather(
        *(s.search(query, settings.max_candidates) for s in sources), return_exceptions=True
    )
    merged = []
    for source, res in zip(sources, results):
        if isinstance(res, BaseException):
            trace.note(f"{source.name} err: {type(res).__name__}: {res}")
            continue
        if not isinstance(res, ProviderResult):
            continue
        trace.merge(res.trace)
        merged.extend(res.candidates)

    candidates = _finalize_candidates(merged, settings.max_candidates)
    if not candidates:
        logger.info("catalog: no product urls for %r", query)
        return {}, trace

    top = [c.url for c in candidates[: settings.meta_candidates]]
    metas = await asyncio.gather(*(scrape_product_meta(u) for u in top), return_exceptions=True)
    for meta in metas:
        if isinstance(meta, BaseException) or meta is None:
            continue
        if not (meta.product_url and meta.image_url and meta.title):
            continue
        if not await validate_image_url(meta.image_url):
            trace.note(f"image invalid: {meta.image_url}")
            continue
        logger.info("catalog: resolved %r -> %s", toy.title, meta.product_url)
        return {
            "retailer": meta.retailer or "unknown",
            "product_url": meta.product_url,
            "image_url": meta.image_url,
            "price": parse_price(meta.price) or toy.price_min,
        }, trace

    logger.info("catalog: no valid product with image for %r", query)
    return {}, trace


async def generate_fast_catalog(
    gender: str,
    category: Optional[str] = None,
    price_max: Optional[float] = None,
    *,
    seeds: Sequence[PopularToy] = POPULAR_TOYS,
    finder: Optional[Finder] = None,
) -> FastCatalogResult:
    finder = finder or find_product_for_toy
    trace = DiagnosticTrace()

    curated = get_trending_toys(
        category=category, gender=_gender_filter(gender), max_price=price_max, toys=tuple(seeds)
    )[: settings.seed_limit]
    rows = [_row_from_toy(toy, i) for i, toy in enumerate(curated)]

    head = settings.enrich_limit
    sem = asyncio.Semaphore(max(1, settings.enrich_concurrency))

    async def enrich(index: int) -> CatalogRow:
        async with sem:
            data, branch_trace = await finder(curated[index])
        trace.merge(branch_trace)
        if not data:
            return rows[index]
        return replace(rows[index], tmp_id=f"enhanced_{index}", **data)

    results = await asyncio.gather(*(enrich(i) for i in range(min(head, len(rows)))), return_exceptions=True)
    enriched: List[CatalogRow] = []
    for i, res in enumerate(results):
        if isinstance(res, BaseException):
            logger.error("catalog: failed: %s: %s", type(res).__name__, res)
            trace.note(f"enrich err: {rows[i].title}: {type(res).__name__}: {res}")
            enriched.append(rows[i])
            continue
        enriched.append(res)

    unique = dedupe_by_title([*enriched, *rows[head:]])
    stats = FastCatalogStats(
        curated_count=len(rows),
        enriched_count=sum(1 for r in enriched if r.product_url),
        total_unique=len(unique),
    )
    return FastCatalogResult(rows=unique, stats=stats, trace=trace)


def get_trending_by_category(gender: str, category: Optional[str] = None, limit: int = 12) -> List[CatalogRow]:
    picked = get_trending_toys(category=category, gender=_gender_filter(gender))
    rows = [_row_from_toy(toy, i) for i, toy in enumerate(picked[:limit])]
    for row in rows:
        row.tmp_id = row.tmp_id.replace("curated_", "trending_")
    return rows


@dataclass
class CatalogBuildResult:
    query: str
    found: int
    scraped: int
    kept: int
    errors: List[str] = field(default_factory=list)
    drafts: List[CatalogDraft] = field(default_factory=list)


async def build_catalog(
    queries: Sequence[str],
    max_per_query: int = 10,
    gender: str = Gender.NEUTRAL.value,
    *,
    discover: Callable[..., Awaitable[DiscoveryResult]] = discover_products,
) -> List[CatalogBuildResult]:
    out: List[CatalogBuildResult] = []
    for i, query in enumerate(q for q in queries if q and q.strip()):
        if i:
            await asyncio.sleep(settings.batch_query_delay_seconds)
        res = await discover(query, max_per_query)
        errors = [n for n in res.trace.notes if " err" in n or "failed" in n]
        out.append(
            CatalogBuildResult(
                query=query,
                found=res.found,
                scraped=res.scraped,
                kept=len(res.records),
                errors=errors,
                drafts=[to_catalog_draft(r, gender) for r in res.records],
            )
        )
        logger.info("catalog: %r found=%s kept=%s", query, res.found, len(res.records))
    return out
