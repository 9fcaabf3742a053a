from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Query

from .catalog import CatalogRow, build_catalog, discover_products, generate_fast_catalog, get_trending_by_category
from .config import settings
from .image_validation import validate_image_url
from .product_meta import parse_price, scrape_product_meta, to_catalog_draft
from .schemas import (
    CatalogBuildItemOut,
    CatalogBuildRequest,
    CatalogBuildResponse,
    CatalogDraftOut,
    CatalogRowOut,
    CuratedResponse,
    CuratedToyOut,
    DiscoverResponse,
    FastCatalogRequest,
    FastCatalogResponse,
    FastCatalogStatsOut,
    GenderIn,
    ImageValidationOut,
    PreviewOut,
    ProvidersResponse,
    TraceOut,
    TrendingResponse,
)
from .search_providers.base import DiagnosticTrace
from .search_service import _csv, available_providers, best_provider
from .toy_data import PopularToy, search_popular_toys

router = APIRouter(prefix="/api", tags=["sourcing"])


def _trace_out(trace: DiagnosticTrace) -> TraceOut:
    return TraceOut(**trace.as_dict())


def _row_out(row: CatalogRow) -> CatalogRowOut:
    data = asdict(row)
    data["id"] = data.pop("tmp_id")
    return CatalogRowOut(**data)


def _toy_out(toy: PopularToy) -> CuratedToyOut:
    return CuratedToyOut(
        title=toy.title,
        brand=toy.brand,
        category=toy.category.value,
        gender=toy.gender.value,
        price_min=toy.price_min,
        price_max=toy.price_max,
        age_min=toy.target_age[0],
        age_max=toy.target_age[1],
        popularity=toy.popularity,
        seasonal=toy.seasonal,
        keywords=list(toy.keywords),
    )


@router.get("/discover", response_model=DiscoverResponse)
async def discover(
    q: str = Query(..., min_length=2, max_length=120, description="Поисковый запрос"),
    limit: int = Query(5, ge=1, le=20),
    gender: GenderIn = Query("neutral"),
):
    res = await discover_products(q, limit)
    return DiscoverResponse(
        query=q,
        found=res.found,
        scraped=res.scraped,
        items=[CatalogDraftOut.model_validate(to_catalog_draft(r, gender)) for r in res.records],
        trace=_trace_out(res.trace),
    )


@router.get("/preview", response_model=PreviewOut)
async def preview(url: str = Query(..., min_length=8, max_length=2048, pattern=r"^https?://")):
    record = await scrape_product_meta(url)
    if record is None:
        return PreviewOut(url=url, title=url)
    return PreviewOut(
        url=url,
        title=record.title or url,
        image_url=record.image_url,
        price=parse_price(record.price),
        site_name=record.retailer,
        brand=record.brand,
    )


@router.get("/images/validate", response_model=ImageValidationOut)
async def validate_image(url: str = Query(..., min_length=8, max_length=2048)):
    return ImageValidationOut(url=url, valid=await validate_image_url(url))


@router.get("/catalog/curated", response_model=CuratedResponse, tags=["catalog"])
def curated(
    q: str = Query(..., min_length=1, max_length=120),
    limit: int = Query(20, ge=1, le=50),
):
    return CuratedResponse(items=[_toy_out(t) for t in search_popular_toys(q, limit)])


@router.get("/catalog/trending", response_model=TrendingResponse, tags=["catalog"])
def trending(
    gender: GenderIn = Query("neutral"),
    category: Optional[str] = Query(None, max_length=40),
    max_price: Optional[float] = Query(None, gt=0),
    limit: int = Query(12, ge=1, le=50),
):
    rows = get_trending_by_category(gender, category, limit=limit)
    if max_price:
        rows = [r for r in rows if r.price is None or r.price <= max_price]
    return TrendingResponse(items=[_row_out(r) for r in rows])


@router.post("/catalog/fast", response_model=FastCatalogResponse, tags=["catalog"])
async def fast_catalog(payload: FastCatalogRequest):
    res = await generate_fast_catalog(payload.gender, payload.category, payload.price_max)
    return FastCatalogResponse(
        rows=[_row_out(r) for r in res.rows],
        stats=FastCatalogStatsOut(**asdict(res.stats)),
        trace=_trace_out(res.trace),
    )


@router.post("/catalog/build", response_model=CatalogBuildResponse, tags=["catalog"])
async def catalog_build(payload: CatalogBuildRequest):
    results = await build_catalog(payload.queries, payload.max_per_query, payload.gender)
    return CatalogBuildResponse(
        items=[
            CatalogBuildItemOut(
                query=r.query,
                found=r.found,
                scraped=r.scraped,
                kept=r.kept,
                errors=r.errors,
                drafts=[CatalogDraftOut.model_validate(d) for d in r.drafts],
            )
            for r in results
        ]
    )


@router.get("/providers", response_model=ProvidersResponse)
def providers():
    return ProvidersResponse(
        primary=settings.search_provider,
        fallback_order=_csv(settings.fallback_order),
        available=available_providers(),
        recommended=best_provider(),
    )
