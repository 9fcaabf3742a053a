"""
Метаданные одного товара: JSON-LD `Product` со страницы, с подстраховкой
заголовком из slug в URL, если структурных данных нет или страница закрыта антиботом.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Union

from bs4 import BeautifulSoup

from sourcing.config import settings
from sourcing.retailers import _host, retailer_for_url, title_from_url
from sourcing.search_service import (
    _block_reason,
    _clean_title,
    _fetch_with_httpx_status,
    _first_http_url,
    _reader_urls,
    logger,
)

Price = Union[float, str]


@dataclass
class ProductRecord:
    product_url: str
    title: Optional[str] = None
    image_url: Optional[str] = None
    price: Optional[Price] = None
    retailer: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None


@dataclass
class CatalogDraft:
    title: str
    gender: str
    product_url: str
    price: Optional[float] = None
    retailer: str = ""
    image_url: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)


def parse_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    digits = re.sub(r"[^\d.]", "", str(value).replace(",", ""))
    if not digits:
        return None
    try:
        v = float(digits)
    except ValueError:
        return None
    return v if v > 0 else None


def _as_str(x: Any) -> str:
    if x is None or isinstance(x, (dict, list)):
        return ""
    return str(x).strip()


def _iter_objs(data: Any) -> Iterator[dict]:
    if isinstance(data, list):
        for x in data:
            yield from _iter_objs(x)
        return
    if not isinstance(data, dict):
        return
    graph = data.get("@graph")
    if isinstance(graph, list):
        yield from _iter_objs(graph)
        return
    yield data


def _is_product(obj: dict) -> bool:
    t = obj.get("@type")
    types = t if isinstance(t, list) else [t]
    return any(_as_str(x).lower() == "product" for x in types)


def _offer_price(offers: Any) -> Optional[Price]:
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if not isinstance(offers, dict):
        return None
    for key in ("price", "lowPrice"):
        if offers.get(key) not in (None, ""):
            return offers[key]
    spec = offers.get("priceSpecification")
    if isinstance(spec, list):
        spec = spec[0] if spec else None
    if isinstance(spec, dict) and spec.get("price") not in (None, ""):
        return spec["price"]
    return None


def _brand(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        return _as_str(value.get("name"))
    return _as_str(value)


def _image(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        return _first_http_url(_as_str(value.get("url")), _as_str(value.get("contentUrl")))
    return _first_http_url(_as_str(value))


def _structured_blocks(soup: BeautifulSoup) -> Iterator[Any]:
    for script in soup.select("script[type='application/ld+json']"):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            yield json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            # один битый блок не мешает соседним
            continue


def _read_structured(html: str, url: str) -> ProductRecord:
    """
    Поля из JSON-LD `Product` блоков: более поздний блок с непустым полем
    перекрывает ранний. og:image берётся, только если картинки в блоках нет.
    """
    record = ProductRecord(product_url=url)
    try:
        soup = BeautifulSoup(html or "", "html.parser")
    except Exception:
        return record

    for data in _structured_blocks(soup):
        for obj in _iter_objs(data):
            if _is_product(obj):
                record.title = _clean_title(_as_str(obj.get("name") or obj.get("title"))) or record.title
                price = _offer_price(obj.get("offers"))
                if price is not None:
                    record.price = price
                record.brand = _brand(obj.get("brand")) or record.brand
                record.model = _as_str(obj.get("model")) or record.model
                record.category = _as_str(obj.get("category")) or record.category
                record.image_url = _image(obj.get("image")) or record.image_url
            if not record.retailer:
                for key in ("publisher", "isPartOf"):
                    ref = obj.get(key)
                    if isinstance(ref, dict) and _as_str(ref.get("name")):
                        record.retailer = _as_str(ref.get("name"))
                        break

    if not record.image_url:
        og = soup.select_one("meta[property='og:image'][content]")
        if og is not None:
            record.image_url = _first_http_url(og.get("content") or "") or None
    return record


def _complete(record: ProductRecord) -> Optional[ProductRecord]:
    url = record.product_url
    if not record.title:
        record.title = title_from_url(url)
        if not record.title:
            return None
    if not record.retailer:
        spec = retailer_for_url(url)
        record.retailer = spec.display_name if spec else (_host(url) or None)
    return record


def extract_product_meta(html: str, url: str) -> Optional[ProductRecord]:
    """
    ProductRecord из структурных данных страницы.
    Если заголовка так и не нашлось, берём эвристический из URL;
    None, только если и эвристика не смогла.
    """
    return _complete(_read_structured(html, url))


def heuristic_record(url: str) -> Optional[ProductRecord]:
    title = title_from_url(url)
    if not title:
        return None
    spec = retailer_for_url(url)
    return ProductRecord(product_url=url, title=title, retailer=spec.display_name if spec else None)


async def scrape_product_meta(url: str) -> Optional[ProductRecord]:
    """Никогда не бросает: сеть/антибот → эвристика по URL или None."""
    try:
        for reader in _reader_urls(url):
            status, html, title, final_url, err = await _fetch_with_httpx_status(
                "product-meta",
                reader,
                timeout=settings.item_timeout_seconds,
                headers={"X-Return-Format": "html"},
            )
            if err or not html or status >= 400:
                continue
            record = _read_structured(html, url)
            # маркеры антибота (recaptcha и т.п.) не отменяют найденный Product
            if not record.title:
                reason = _block_reason(title, html)
                if reason:
                    logger.info("product-meta: %s blocked (%s)", url, reason)
                    break
            completed = _complete(record)
            if completed is not None:
                return completed
            break
    except Exception as e:
        logger.error("product-meta: failed: %s: %s", type(e).__name__, e)
    return heuristic_record(url)


def to_catalog_draft(record: ProductRecord, gender: str) -> CatalogDraft:
    return CatalogDraft(
        title=record.title or record.product_url or "",
        gender=gender,
        product_url=record.product_url,
        price=parse_price(record.price),
        retailer=(record.retailer or "").lower(),
        image_url=record.image_url,
        brand=record.brand,
        model=record.model,
        category=record.category,
    )
