from typing import Literal, Optional

from pydantic import BaseModel, Field

GenderIn = Literal["boy", "girl", "neutral"]


class TraceOut(BaseModel):
    counts: dict[str, int] = {}
    notes: list[str] = []


class CatalogDraftOut(BaseModel):
    title: str
    gender: str
    product_url: str
    price: Optional[float] = None
    retailer: str = ""
    image_url: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = []

    model_config = {"from_attributes": True}


class DiscoverResponse(BaseModel):
    query: str
    found: int = 0
    scraped: int = 0
    items: list[CatalogDraftOut]
    trace: TraceOut


class PreviewOut(BaseModel):
    url: str
    title: str
    image_url: Optional[str] = None
    price: Optional[float] = None
    site_name: Optional[str] = None
    brand: Optional[str] = None


class ImageValidationOut(BaseModel):
    url: str
    valid: bool


class CatalogRowOut(BaseModel):
    id: str
    title: str
    brand: str
    category: str
    gender: str
    popularity: int
    keywords: list[str] = []
    is_from_curated_list: bool = True
    price: Optional[float] = None
    retailer: Optional[str] = None
    product_url: Optional[str] = None
    image_url: Optional[str] = None


class CuratedToyOut(BaseModel):
    title: str
    brand: str
    category: str
    gender: str
    price_min: float
    price_max: float
    age_min: int
    age_max: int
    popularity: int
    seasonal: bool = False
    keywords: list[str] = []


class CuratedResponse(BaseModel):
    items: list[CuratedToyOut]


class TrendingResponse(BaseModel):
    items: list[CatalogRowOut]


class FastCatalogRequest(BaseModel):
    gender: GenderIn = "neutral"
    category: Optional[str] = Field(None, max_length=40)
    price_max: Optional[float] = Field(None, gt=0)


class FastCatalogStatsOut(BaseModel):
    curated_count: int
    enriched_count: int
    total_unique: int


class FastCatalogResponse(BaseModel):
    rows: list[CatalogRowOut]
    stats: FastCatalogStatsOut
    trace: TraceOut


class CatalogBuildRequest(BaseModel):
    queries: list[str] = Field(..., min_length=1, max_length=20)
    max_per_query: int = Field(10, ge=1, le=20)
    gender: GenderIn = "neutral"


class CatalogBuildItemOut(BaseModel):
    query: str
    found: int
    scraped: int
    kept: int
    errors: list[str] = []
    drafts: list[CatalogDraftOut] = []


class CatalogBuildResponse(BaseModel):
    items: list[CatalogBuildItemOut]


class ProvidersResponse(BaseModel):
    primary: str
    fallback_order: list[str]
    available: list[str]
    recommended: str
