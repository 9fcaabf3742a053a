"""
Ритейлеры, которым доверяем: allow-list доменов, извлечение ссылок на карточки
товаров из сырого текста выдачи и эвристический заголовок по slug из URL.

У каждого ритейлера свой набор regex, чтобы правка разметки одного магазина
не задевала остальные.
"""

import enum
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
from urllib.parse import quote, urljoin, urlsplit


class Retailer(str, enum.Enum):
    WALMART = "walmart"
    TARGET = "target"
    AMAZON = "amazon"


@dataclass(frozen=True)
class RetailerSpec:
    retailer: Retailer
    domain: str
    display_name: str
    base_url: str
    search_url: str
    extract: Callable[[str, str], List[str]]
    title_from_path: Callable[[str], Optional[str]]

    def search_page(self, query: str) -> str:
        return self.search_url.format(q=quote(query))


def _host(url: str) -> str:
    try:
        host = urlsplit((url or "").strip()).hostname or ""
    except Exception:
        return ""
    host = host.lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def _slug_title(slug: str) -> str:
    words = [w for w in re.split(r"[-_+\s]+", slug or "") if w]
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def _is_readable_slug(slug: str) -> bool:
    # slug из одних цифр/идентификаторов ничего не говорит о товаре
    return bool(slug) and bool(re.search(r"[a-zA-Z]{2,}", slug))


# ---------------- Walmart ----------------
_WALMART_ABS = re.compile(r"https?://(?:www\.)?walmart\.com/ip/[^\s\"'<>()\]]+", re.I)
_WALMART_REL = re.compile(r"/ip/[a-z0-9\-]+/\d+", re.I)
_WALMART_PATH = re.compile(r"^/ip/(?:(?P<slug>[^/]+)/)?(?P<id>\d+)/?$", re.I)


def _extract_walmart(text: str, base: str) -> List[str]:
    found = [m.group(0) for m in _WALMART_ABS.finditer(text or "")]
    found += [urljoin(base, m.group(0)) for m in _WALMART_REL.finditer(text or "")]
    return found


def _walmart_title(path: str) -> Optional[str]:
    m = _WALMART_PATH.match(path or "")
    if not m:
        return None
    slug = m.group("slug") or ""
    if _is_readable_slug(slug):
        return _slug_title(slug)
    return "Walmart Product"


# ---------------- Target ----------------
_TARGET_ABS = re.compile(r"https?://(?:www\.)?target\.com/p/[^\s\"'<>()\]]+/-/A-\d+", re.I)
_TARGET_REL = re.compile(r"/p/[a-z0-9\-]+/-/A-\d+", re.I)
_TARGET_PATH = re.compile(r"^/p/(?:(?P<slug>[^/]+)/)?-/A-(?P<id>\d+)/?$", re.I)


def _extract_target(text: str, base: str) -> List[str]:
    found = [m.group(0) for m in _TARGET_ABS.finditer(text or "")]
    found += [urljoin(base, m.group(0)) for m in _TARGET_REL.finditer(text or "")]
    return found


def _target_title(path: str) -> Optional[str]:
    m = _TARGET_PATH.match(path or "")
    if not m:
        return None
    slug = m.group("slug") or ""
    if _is_readable_slug(slug):
        return _slug_title(slug)
    return "Target Product"


# ---------------- Amazon ----------------
# ASIN регистрозависим (A-Z0-9), поэтому без re.I
_AMAZON_DP_ABS = re.compile(r"https?://(?:www\.)?amazon\.com/(?:[^\s\"'<>()/]+/)?dp/[A-Z0-9]{10}")
_AMAZON_GP_ABS = re.compile(r"https?://(?:www\.)?amazon\.com/gp/product/[A-Z0-9]{10}")
_AMAZON_REL = re.compile(r"(?<![\w.])/(?:[A-Za-z0-9%\-]+/)?dp/[A-Z0-9]{10}")
_AMAZON_PATH = re.compile(r"^/(?:(?P<slug>[^/]+)/)?(?:dp|gp/product)/(?P<asin>[A-Z0-9]{10})(?:/.*)?$")


def _extract_amazon(text: str, base: str) -> List[str]:
    found = [m.group(0) for m in _AMAZON_DP_ABS.finditer(text or "")]
    found += [m.group(0) for m in _AMAZON_GP_ABS.finditer(text or "")]
    found += [urljoin(base, m.group(0)) for m in _AMAZON_REL.finditer(text or "")]
    return found


def _amazon_title(path: str) -> Optional[str]:
    m = _AMAZON_PATH.match(path or "")
    if not m:
        return None
    slug = m.group("slug") or ""
    if slug.lower() != "gp" and _is_readable_slug(slug):
        return _slug_title(slug)
    return "Amazon Product"


RETAILERS: dict[Retailer, RetailerSpec] = {
    Retailer.WALMART: RetailerSpec(
        retailer=Retailer.WALMART,
        domain="walmart.com",
        display_name="Walmart",
        base_url="https://www.walmart.com",
        search_url="https://www.walmart.com/search?q={q}",
        extract=_extract_walmart,
        title_from_path=_walmart_title,
    ),
    Retailer.TARGET: RetailerSpec(
        retailer=Retailer.TARGET,
        domain="target.com",
        display_name="Target",
        base_url="https://www.target.com",
        search_url="https://www.target.com/s?searchTerm={q}",
        extract=_extract_target,
        title_from_path=_target_title,
    ),
    Retailer.AMAZON: RetailerSpec(
        retailer=Retailer.AMAZON,
        domain="amazon.com",
        display_name="Amazon",
        base_url="https://www.amazon.com",
        search_url="https://www.amazon.com/s?k={q}",
        extract=_extract_amazon,
        title_from_path=_amazon_title,
    ),
}

ALLOWED_HOSTS = tuple(spec.domain for spec in RETAILERS.values())


def is_allowed_host(url: str) -> bool:
    host = _host(url)
    if not host:
        return False
    return any(host == d or host.endswith("." + d) for d in ALLOWED_HOSTS)


def retailer_for_url(url: str) -> Optional[RetailerSpec]:
    host = _host(url)
    if not host:
        return None
    for spec in RETAILERS.values():
        if host == spec.domain or host.endswith("." + spec.domain):
            return spec
    return None


def extract_product_urls(retailer: Retailer, text: str) -> List[str]:
    spec = RETAILERS[retailer]
    try:
        found = spec.extract(text or "", spec.base_url)
    except Exception:
        return []
    return dedupe_by_path(u.rstrip(".,;") for u in found)


def is_product_url(url: str) -> bool:
    spec = retailer_for_url(url)
    if spec is None:
        return False
    try:
        path = urlsplit(url).path
    except Exception:
        return False
    return spec.title_from_path(path) is not None


def title_from_url(url: str) -> Optional[str]:
    """Человекочитаемый заголовок из slug в пути URL (None, если хост/путь не распознан)."""
    spec = retailer_for_url(url)
    if spec is None:
        return None
    try:
        path = urlsplit(url).path
    except Exception:
        return None
    return spec.title_from_path(path)


def dedupe_by_path(urls: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for u in urls:
        try:
            p = urlsplit((u or "").strip())
        except Exception:
            continue
        if not p.scheme or not p.netloc:
            continue
        key = f"{p.scheme.lower()}://{p.netloc.lower()}{p.path}"
        if key in seen:
            continue
        seen.add(key)
        out.append(u)
    return out
