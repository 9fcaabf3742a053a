from typing import List
from urllib.parse import parse_qs, quote, urlsplit

from bs4 import BeautifulSoup

from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403


def _unwrap_ddg(href: str) -> str:
    # //duckduckgo.com/l/?uddg=<target>&rut=...
    href = _abs_url("https://duckduckgo.com", href)  # noqa: F405
    try:
        p = urlsplit(href)
    except Exception:
        return ""
    if (p.hostname or "").endswith("duckduckgo.com"):
        return (parse_qs(p.query).get("uddg") or [""])[0]
    return href


class DuckDuckGoHtmlProvider(SearchProvider):
    name = "duckduckgo"

    async def search(self, query: str, limit: int) -> ProviderResult:
        trace = DiagnosticTrace()
        found = await _first_variant_with_results(  # noqa: F405
            self.name, _query_variants(query), self._attempt, trace  # noqa: F405
        )
        trace.count(f"{self.name}:parsed", len(found))
        return ProviderResult(candidates=found[: max(0, limit)], trace=trace)

    async def _attempt(self, variant: str, trace: DiagnosticTrace) -> List[Candidate]:
        url = f"https://html.duckduckgo.com/html/?q={quote(variant)}&kl=us-en"
        status, html, title, final_url, err = await _fetch_with_httpx_status(  # noqa: F405
            self.name, url, timeout=settings.serp_timeout_seconds  # noqa: F405
        )
        if err or not html or status >= 400:
            trace.note(f"{self.name} {status or err}")
            return []
        reason = _block_reason(title, html)  # noqa: F405
        if reason:
            trace.note(f"{self.name}: blocked ({reason})")
            trace.count(f"{self.name}:blocked")
            return []
        items = _finalize_candidates(self._parse_html(html), settings.max_candidates)  # noqa: F405
        if not items:
            debug_path = _write_debug_html(self.name, html)  # noqa: F405
            logger.error(  # noqa: F405
                "%s: parsed 0 items (title=%r, final_url=%r, status=%s, debug=%r)",
                self.name,
                title,
                final_url,
                status,
                debug_path,
            )
        return items

    def _parse_html(self, html: str) -> List[Candidate]:
        soup = BeautifulSoup(html, "html.parser")
        out: List[Candidate] = []
        seen: set[str] = set()
        for a in soup.select("a.result__a[href]"):
            url = _first_http_url(_unwrap_ddg(a.get("href") or ""))  # noqa: F405
            if not url or url in seen:
                continue
            seen.add(url)
            snippet = ""
            container = a.find_parent(class_="result")
            if container is not None:
                node = container.select_one(".result__snippet")
                snippet = node.get_text(" ", strip=True) if node else ""
            out.append(
                Candidate(
                    url=url,
                    title=_clean_title(a.get_text(" ", strip=True)) or None,  # noqa: F405
                    snippet=_clean_title(snippet) or None,  # noqa: F405
                )
            )
            if len(out) >= 80:
                break
        return out
