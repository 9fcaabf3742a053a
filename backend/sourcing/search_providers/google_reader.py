import re
from typing import List
from urllib.parse import parse_qs, quote, urlsplit

from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403

_MD_LINK = re.compile(r"\[([^\]\n]{2,300})\]\((https?://[^\s)]+)\)")
_HTTP_LINE = re.compile(r"^https?://", re.I)


def _unwrap_google(url: str) -> str:
    # /url?q=<target>&sa=...: редирект-обёртка Google
    try:
        p = urlsplit(url)
    except Exception:
        return url
    if (p.hostname or "").endswith("google.com") and p.path == "/url":
        target = (parse_qs(p.query).get("q") or [""])[0]
        if target:
            return target
    return url


class GoogleReaderProvider(SearchProvider):
    """Публичная выдача Google, прочитанная через reader-прокси как текст."""

    name = "google-reader"

    async def search(self, query: str, limit: int) -> ProviderResult:
        trace = DiagnosticTrace()
        found = await _first_variant_with_results(  # noqa: F405
            self.name, _query_variants(query), self._attempt, trace  # noqa: F405
        )
        trace.count(f"{self.name}:parsed", len(found))
        return ProviderResult(candidates=found[: max(0, limit)], trace=trace)

    async def search_site(self, query: str, site: str, limit: int) -> ProviderResult:
        trace = DiagnosticTrace()
        found = await self._attempt(f"{query} site:{site}", trace)
        return ProviderResult(candidates=found[: max(0, limit)], trace=trace)

    async def _attempt(self, variant: str, trace: DiagnosticTrace) -> List[Candidate]:
        serp = f"https://www.google.com/search?q={quote(variant)}&hl=en&safe=active&num=50&udm=14"
        for url in _reader_urls(serp):  # noqa: F405
            status, text, title, final_url, err = await _fetch_with_httpx_status(  # noqa: F405
                self.name, url, timeout=settings.serp_timeout_seconds  # noqa: F405
            )
            if err or not text or status >= 400:
                trace.note(f"{self.name} {status or err}")
                continue
            reason = _block_reason(title, text)  # noqa: F405
            if reason:
                trace.note(f"{self.name}: blocked ({reason})")
                trace.count(f"{self.name}:blocked")
                continue
            items = _finalize_candidates(self._parse_text(text), settings.max_candidates)  # noqa: F405
            if items:
                return items
            debug_path = _write_debug_html(self.name, text)  # noqa: F405
            logger.error("%s: parsed 0 items (status=%s, debug=%r)", self.name, status, debug_path)  # noqa: F405
        return []

    def _parse_text(self, text: str) -> List[Candidate]:
        lines = [s.strip() for s in text.split("\n")[: settings.max_serp_lines]]  # noqa: F405
        lines = [s for s in lines if s]
        out: List[Candidate] = []
        seen: set[str] = set()

        # Текстовый режим reader: заголовок / URL / сниппет на соседних строках.
        for i in range(len(lines) - 2):
            title, url, maybe_snippet = lines[i], lines[i + 1], lines[i + 2]
            if _HTTP_LINE.match(title) or not _HTTP_LINE.match(url):
                continue
            url = _unwrap_google(url)
            if url in seen:
                continue
            seen.add(url)
            snippet = None if _HTTP_LINE.match(maybe_snippet) else _clean_title(maybe_snippet)  # noqa: F405
            out.append(Candidate(url=url, title=_clean_title(title) or None, snippet=snippet or None))  # noqa: F405
            if len(out) >= 80:
                return out

        # Markdown-режим: [title](url)
        for m in _MD_LINK.finditer("\n".join(lines)):
            url = _unwrap_google(m.group(2))
            if url in seen:
                continue
            seen.add(url)
            out.append(Candidate(url=url, title=_clean_title(m.group(1)) or None))  # noqa: F405
            if len(out) >= 80:
                break
        return out
