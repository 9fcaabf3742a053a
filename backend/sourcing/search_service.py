import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from html import unescape
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urljoin, urlsplit

import httpx

from sourcing.config import settings
from sourcing.retailers import RETAILERS, dedupe_by_path, is_allowed_host
from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider


logger = logging.getLogger("uvicorn.error")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.6312.105 Safari/537.36"
)

HTTP_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    # В httpx brotli (br) декодируется только при установленном brotli/brotlicffi.
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

# Страница короче этого почти всегда заглушка антибота/ошибка, а не выдача.
MIN_BODY_CHARS = 200

PROVIDER_NAMES = ("google-custom", "serper", "google-reader", "bing", "duckduckgo")
ALWAYS_AVAILABLE_PROVIDER = "bing"


@dataclass(frozen=True)
class RateLimit:
    max_concurrent: int
    delay_seconds: float


RATE_LIMITS: Dict[str, RateLimit] = {
    "google-custom": RateLimit(max_concurrent=3, delay_seconds=1.0),
    "serper": RateLimit(max_concurrent=5, delay_seconds=0.2),
    "bing": RateLimit(max_concurrent=2, delay_seconds=1.5),
    "google-reader": RateLimit(max_concurrent=2, delay_seconds=2.0),
    "duckduckgo": RateLimit(max_concurrent=2, delay_seconds=2.0),
}

_HTTP_CLIENTS: dict[str, httpx.AsyncClient] = {}
_HTTP_CLIENT_LOCK = asyncio.Lock()


async def init_http_client() -> None:
    await _get_http_client(settings.http_proxy_url or None)


async def close_http_client() -> None:
    global _HTTP_CLIENTS
    clients = list(_HTTP_CLIENTS.values())
    _HTTP_CLIENTS = {}
    for client in clients:
        try:
            await client.aclose()
        except Exception:
            pass


async def _get_http_client(proxy_url: Optional[str] = None) -> httpx.AsyncClient:
    key = _normalize_proxy_url(proxy_url or "")
    if key in _HTTP_CLIENTS:
        return _HTTP_CLIENTS[key]
    async with _HTTP_CLIENT_LOCK:
        if key in _HTTP_CLIENTS:
            return _HTTP_CLIENTS[key]
        proxy_norm = key or None
        if proxy_norm:
            logger.info("HTTPX: proxy enabled %s", _proxy_brief(proxy_norm))
        client = httpx.AsyncClient(
            headers=HTTP_HEADERS,
            follow_redirects=True,
            proxy=proxy_norm,
            timeout=settings.api_timeout_seconds,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        _HTTP_CLIENTS[key] = client
        return client


def _normalize_proxy_url(proxy_url: str) -> str:
    u = (proxy_url or "").strip()
    if not u:
        return ""
    try:
        p = urlsplit(u)
        host = p.hostname
        port = p.port
        if not host or not port:
            return u
        scheme = (p.scheme or "http").lower()
        if scheme == "https":
            scheme = "http"
        auth = ""
        if p.username:
            auth = p.username
            if p.password:
                auth += f":{p.password}"
            auth += "@"
        return f"{scheme}://{auth}{host}:{port}"
    except Exception:
        return u


def _proxy_brief(proxy_url: str) -> str:
    u = (proxy_url or "").strip()
    if not u:
        return ""
    try:
        p = urlsplit(u)
        host = p.hostname or ""
        port = p.port or 0
        if not host or not port:
            return "<invalid>"
        scheme = (p.scheme or "http").lower()
        auth = "auth" if (p.username or p.password) else "noauth"
        return f"{scheme}://{host}:{port} ({auth})"
    except Exception:
        return "<invalid>"


BLOCK_MARKERS = re.compile(
    r"("
    r"captcha|unusual\s+traffic|\bblocked\b|access\s+denied|robot\s+check"
    r"|are\s+you\s+a\s+robot|verify\s+you\s+are\s+(?:a\s+)?human|anomaly-modal"
    r")",
    re.I,
)


def _httpx_decode(resp: httpx.Response) -> str:
    try:
        return resp.text or ""
    except Exception:
        try:
            return (resp.content or b"").decode("utf-8", errors="ignore")
        except Exception:
            return ""


def _html_title(html: str) -> str:
    if not html:
        return ""
    m = re.search(r"<title[^>]*>(.*?)</title>", html, flags=re.I | re.S)
    if not m:
        return ""
    return re.sub(r"\s+", " ", unescape(m.group(1) or "").strip())


def _clean_title(text: str) -> str:
    t = unescape(text or "")
    # NBSP и невидимые символы иногда попадают в выдачу и ломают дедупликацию.
    t = t.replace("\u00a0", " ")
    t = re.sub(r"[\u200b\u200c\u200d\u200e\u200f\u202a\u202b\u202c\u2060]", "", t)
    return re.sub(r"\s+", " ", t.strip(" ,;|")).strip()


def _abs_url(base: str, href: str) -> str:
    href = (href or "").strip()
    if not href:
        return ""
    if href.startswith("http://") or href.startswith("https://"):
        return href
    if href.startswith("//"):
        return f"https:{href}"
    return urljoin(base, href)


def _first_http_url(*candidates: str) -> str:
    for u in candidates:
        u = (u or "").strip()
        if not u:
            continue
        if u.startswith("data:"):
            continue
        if u.startswith("//"):
            return f"https:{u}"
        if u.startswith("http://") or u.startswith("https://"):
            return u
    return ""


def _safe_debug_name(provider: str) -> str:
    return re.sub(r"[^a-z0-9_.-]+", "_", (provider or "provider").lower()).strip("_") or "provider"


def _write_debug_html(provider: str, html: str) -> str:
    if not settings.debug_html:
        return ""
    try:
        base = Path(__file__).resolve().parents[1] / "debug_html"
        base.mkdir(parents=True, exist_ok=True)
        path = base / f"{_safe_debug_name(provider)}_last.html"
        path.write_text(html or "", encoding="utf-8", errors="ignore")
        return str(path)
    except Exception:
        return ""


def _block_reason(title: Optional[str], html: Optional[str]) -> Optional[str]:
    t = (title or "").strip()
    h = (html or "").strip()
    if len(h) < MIN_BODY_CHARS:
        return f"short body ({len(h)} chars)"
    m = BLOCK_MARKERS.search(t) or BLOCK_MARKERS.search(h[:20000])
    if m:
        return f"marker {m.group(1).lower()!r}"
    return None


async def _request_with_timeout(
    provider: str,
    method: str,
    url: str,
    *,
    timeout: float,
    headers: Optional[dict] = None,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None,
) -> Tuple[Optional[httpx.Response], Optional[str]]:
    """
    Один HTTP-запрос с собственным бюджетом времени.
    Истечение бюджета отменяет запрос и возвращается как локальная ошибка.
    """
    client = await _get_http_client(settings.http_proxy_url or None)
    loop = asyncio.get_running_loop()
    t0 = loop.time()
    try:
        resp = await asyncio.wait_for(
            client.request(method, url, headers=headers, json=json_body, params=params, timeout=timeout),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("%s: %s timed out after %.1fs", provider, method, timeout)
        return None, f"timeout after {timeout:.1f}s"
    except Exception as e:
        logger.error("%s: httpx failed: %s: %s", provider, type(e).__name__, e)
        return None, f"{type(e).__name__}: {e}"
    logger.info(
        "%s: %s status=%s in %.2fs (ct=%r)",
        provider,
        method,
        resp.status_code,
        loop.time() - t0,
        resp.headers.get("content-type"),
    )
    return resp, None


async def _fetch_with_httpx_status(
    provider: str,
    url: str,
    *,
    timeout: Optional[float] = None,
    headers: Optional[dict] = None,
) -> Tuple[int, Optional[str], Optional[str], Optional[str], Optional[str]]:
    resp, err = await _request_with_timeout(
        provider,
        "GET",
        url,
        timeout=timeout or settings.serp_timeout_seconds,
        headers=headers,
    )
    if resp is None:
        return 0, None, None, None, err
    body = _httpx_decode(resp)
    final_url = str(resp.url) if resp.url else url
    return int(resp.status_code or 0), body, _html_title(body), final_url, None


def _reader_urls(target_url: str) -> List[str]:
    base = (settings.reader_proxy_base or "").rstrip("/")
    raw = re.sub(r"^https?://", "", target_url)
    return [
        f"{base}/http/{quote(target_url, safe='')}",
        f"{base}/http://{raw}",
    ]


def _csv(raw: str) -> List[str]:
    parts = re.split(r"[,;\n]+", raw or "")
    return [p.strip() for p in parts if p and p.strip()]


_TOKEN_SYNONYMS: dict[str, str] = {
    "legos": "lego",
    "stuffy": "plush",
    "stuffie": "plush",
    "rc": "remote control",
    "playhouse": "dollhouse",
    "pokemon": "pokémon",
    "spiderman": "spider-man",
    "nerf gun": "nerf blaster",
}


def _site_filter() -> str:
    return " OR ".join(f"site:{spec.domain}" for spec in RETAILERS.values())


def _query_variants(query: str) -> List[str]:
    q = re.sub(r"\s+", " ", (query or "").strip())
    if not q:
        return []
    out = [q, f"{q} {_site_filter()}"]
    low = q.lower()
    swapped = low
    for src, dst in _TOKEN_SYNONYMS.items():
        swapped = re.sub(rf"\b{re.escape(src)}\b", dst, swapped)
    if swapped != low:
        out.append(swapped)
    return out


def _augment_query(query: str) -> str:
    q = re.sub(r"\s+", " ", (query or "").strip())
    context = (settings.context_terms or "").strip()
    if context:
        q = f"{q} {context}"
    excludes = " ".join(f"-{t}" for t in _csv(settings.exclude_terms))
    return f"{q} {excludes}".strip()


def _finalize_candidates(candidates: Iterable[Candidate], limit: int) -> List[Candidate]:
    by_url: dict[str, Candidate] = {}
    ordered: List[str] = []
    for c in candidates:
        if not c or not c.url or not is_allowed_host(c.url):
            continue
        if c.url not in by_url:
            by_url[c.url] = c
            ordered.append(c.url)
    return [by_url[u] for u in dedupe_by_path(ordered)][: max(0, limit)]


async def _first_variant_with_results(
    provider: str,
    variants: Sequence[str],
    attempt: Callable[[str, DiagnosticTrace], Awaitable[List[Candidate]]],
    trace: DiagnosticTrace,
) -> List[Candidate]:
    """Пробуем варианты по очереди с паузой между попытками; выходим на первом непустом."""
    for i, variant in enumerate(variants):
        if i:
            await asyncio.sleep(settings.variant_delay_seconds)
        try:
            found = await attempt(variant, trace)
        except Exception as e:
            logger.error("%s: variant failed: %s: %s", provider, type(e).__name__, e)
            trace.note(f"{provider} err: {type(e).__name__}: {e}")
            continue
        if found:
            return found
    return []


QuotaPredicate = Callable[[str], bool]


def is_quota_exceeded(error: str, patterns: Optional[Sequence[str]] = None) -> bool:
    low = (error or "").lower()
    if not low:
        return False
    phrases = _csv(settings.quota_patterns) if patterns is None else patterns
    return any(p.lower() in low for p in phrases if p)


def _provider_factories() -> Dict[str, type]:
    # Импорт провайдеров отложен, чтобы не ловить циклический импорт с shared-хелперами.
    from sourcing.search_providers.bing import BingRssProvider
    from sourcing.search_providers.duckduckgo import DuckDuckGoHtmlProvider
    from sourcing.search_providers.google_custom import GoogleCustomSearchProvider
    from sourcing.search_providers.google_reader import GoogleReaderProvider
    from sourcing.search_providers.serper import SerperProvider

    return {
        "google-custom": GoogleCustomSearchProvider,
        "serper": SerperProvider,
        "google-reader": GoogleReaderProvider,
        "bing": BingRssProvider,
        "duckduckgo": DuckDuckGoHtmlProvider,
    }


def _provider_for_source(source: str) -> Optional[SearchProvider]:
    factory = _provider_factories().get((source or "").strip().lower())
    return factory() if factory else None


def build_providers() -> Dict[str, SearchProvider]:
    return {name: factory() for name, factory in _provider_factories().items()}


def available_providers(providers: Optional[Dict[str, SearchProvider]] = None) -> List[str]:
    providers = providers if providers is not None else build_providers()
    return [name for name in PROVIDER_NAMES if name in providers and providers[name].available()]


def best_provider(last_error: Optional[str] = None, providers: Optional[Dict[str, SearchProvider]] = None) -> str:
    providers = providers if providers is not None else build_providers()
    available = set(available_providers(providers))
    fallbacks = [p for p in _csv(settings.fallback_order) if p in available]
    if last_error and is_quota_exceeded(last_error):
        logger.warning("Search: quota exceeded for %s, trying fallbacks", settings.search_provider)
        if fallbacks:
            return fallbacks[0]
    if settings.search_provider in available:
        return settings.search_provider
    if fallbacks:
        return fallbacks[0]
    return ALWAYS_AVAILABLE_PROVIDER


class ProviderOrchestrator:
    """
    Цепочка провайдеров в фиксированном приоритете.
    Квота → следующий по списку; прочая ошибка → ближайший scrape-провайдер.
    Никогда не бросает исключения наружу.
    """

    def __init__(
        self,
        providers: Optional[Dict[str, SearchProvider]] = None,
        *,
        primary: Optional[str] = None,
        fallback_order: Optional[Sequence[str]] = None,
        is_quota_error: QuotaPredicate = is_quota_exceeded,
    ) -> None:
        self.providers = providers if providers is not None else build_providers()
        self.primary = (primary or settings.search_provider or "").strip().lower()
        if fallback_order is None:
            fallback_order = _csv(settings.fallback_order)
        self.fallback_order = [p.strip().lower() for p in fallback_order if p and p.strip()]
        self.is_quota_error = is_quota_error

    def chain(self, *, skip: Iterable[str] = ()) -> List[SearchProvider]:
        skipped = set(skip)
        out: List[SearchProvider] = []
        seen: set[str] = set()
        for name in [self.primary, *self.fallback_order]:
            if not name or name in seen:
                continue
            seen.add(name)
            provider = self.providers.get(name)
            if provider is None:
                logger.warning("Search: unknown provider %r, skipping", name)
                continue
            if not provider.available():
                logger.info("Search: provider %s unavailable, skipping", name)
                continue
            out.append(provider)
        if not out and ALWAYS_AVAILABLE_PROVIDER in self.providers:
            out.append(self.providers[ALWAYS_AVAILABLE_PROVIDER])
        return [p for p in out if p.name not in skipped]

    def _query_for(self, provider: SearchProvider, query: str) -> str:
        if provider.kind == "api":
            return _augment_query(query)
        return query

    async def search(self, query: str, limit: int, *, skip: Iterable[str] = ()) -> ProviderResult:
        trace = DiagnosticTrace()
        try:
            return await self._search(query, limit, trace, skip=skip)
        except Exception as e:
            logger.error("Search: orchestrator failed: %s: %s", type(e).__name__, e)
            trace.note(f"orchestrator err: {type(e).__name__}: {e}")
            return ProviderResult(trace=trace)

    async def _search(
        self,
        query: str,
        limit: int,
        trace: DiagnosticTrace,
        *,
        skip: Iterable[str],
    ) -> ProviderResult:
        remaining = self.chain(skip=skip)
        prev: Optional[str] = None
        reason = ""
        while remaining:
            provider = remaining.pop(0)
            if prev is not None:
                trace.note(f"fallback: {prev} -> {provider.name} ({reason})")
                trace.count("fallbacks")
                logger.info("Search: fallback %s -> %s (%s)", prev, provider.name, reason)
            prev = provider.name

            try:
                res = await provider.search(self._query_for(provider, query), limit)
            except Exception as e:
                logger.error("%s: failed: %s: %s", provider.name, type(e).__name__, e)
                res = ProviderResult(error=f"{type(e).__name__}: {e}")
            trace.merge(res.trace)

            if not res.ok:
                trace.count(f"{provider.name}:errors")
                if self.is_quota_error(res.error):
                    trace.note(f"{provider.name}: quota exhausted ({res.error})")
                    reason = "quota"
                    continue
                trace.note(f"{provider.name}: failed ({res.error})")
                reason = "error"
                for i, p in enumerate(remaining):
                    if p.kind == "scrape":
                        remaining = remaining[i:]
                        break
                continue

            candidates = _finalize_candidates(res.candidates, limit)
            trace.count(provider.name, len(candidates))
            trace.note(f"{provider.name}: {len(candidates)} results")
            if candidates:
                return ProviderResult(candidates=candidates, trace=trace)
            reason = "empty"

        trace.note("orchestrator: providers exhausted, no candidates")
        return ProviderResult(trace=trace)


async def search_candidates(query: str, limit: Optional[int] = None) -> ProviderResult:
    return await ProviderOrchestrator().search(query, limit or settings.max_candidates)


async def gather_candidates(
    query: str,
    limit: Optional[int] = None,
    *,
    orchestrator: Optional[ProviderOrchestrator] = None,
    parallel: Optional[Sequence[SearchProvider]] = None,
) -> ProviderResult:
    """
    Параллельный fan-out: цепочка оркестратора + отдельные адаптеры + поиск по ритейлерам.
    Ждём завершения всех веток (settle-all); падение одной не отменяет остальные.
    """
    from sourcing.search_providers.retailers import RetailerSearchProvider

    limit = limit or settings.max_candidates
    orchestrator = orchestrator or ProviderOrchestrator()
    if parallel is None:
        parallel = [
            orchestrator.providers.get("google-reader") or _provider_for_source("google-reader"),
            orchestrator.providers.get("bing") or _provider_for_source("bing"),
            RetailerSearchProvider(),
        ]
    parallel = [p for p in parallel if p is not None]

    trace = DiagnosticTrace()
    branches = [orchestrator.search(query, limit, skip=[p.name for p in parallel])]
    names = ["orchestrator"]
    for p in parallel:
        branches.append(p.search(query, limit))
        names.append(p.name)

    results = await asyncio.gather(*branches, return_exceptions=True)

    merged: List[Candidate] = []
    for name, res in zip(names, results):
        if isinstance(res, BaseException):
            logger.error("%s: failed: %s: %s", name, type(res).__name__, res)
            trace.note(f"{name} err: {type(res).__name__}: {res}")
            continue
        trace.merge(res.trace)
        if not res.ok:
            trace.note(f"{name}: failed ({res.error})")
            continue
        if name != "orchestrator":
            trace.count(name, len(res.candidates))
        merged.extend(res.candidates)

    candidates = _finalize_candidates(merged, limit)
    trace.note(f"candidates: {len(candidates)} unique from {len(merged)}")
    logger.info("Search: %s candidates for query=%r", len(candidates), query)
    return ProviderResult(candidates=candidates, trace=trace)


@dataclass
class BatchSearchResult:
    query: str
    candidates: List[Candidate]
    error: Optional[str] = None


async def batch_search(
    queries: Sequence[str],
    provider: str,
    *,
    retailer: Optional[str] = None,
    limit: int = 10,
) -> List[BatchSearchResult]:
    impl = _provider_for_source(provider)
    rate = RATE_LIMITS.get(provider, RateLimit(max_concurrent=2, delay_seconds=2.0))
    site = None
    if retailer:
        site = next((s.domain for s in RETAILERS.values() if s.retailer.value == retailer), None)

    async def one(q: str) -> BatchSearchResult:
        if impl is None:
            return BatchSearchResult(query=q, candidates=[], error=f"unknown provider {provider!r}")
        try:
            if site and hasattr(impl, "search_site"):
                res = await impl.search_site(_augment_query(q), site, limit)
            else:
                res = await impl.search(_augment_query(q) if impl.kind == "api" else q, limit)
        except Exception as e:
            return BatchSearchResult(query=q, candidates=[], error=f"{type(e).__name__}: {e}")
        return BatchSearchResult(query=q, candidates=list(res.candidates), error=res.error)

    out: List[BatchSearchResult] = []
    step = max(1, rate.max_concurrent)
    for i in range(0, len(queries), step):
        batch = queries[i : i + step]
        out.extend(await asyncio.gather(*(one(q) for q in batch)))
        if i + step < len(queries):
            await asyncio.sleep(rate.delay_seconds)
    return out
