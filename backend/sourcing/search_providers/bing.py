import re
import xml.etree.ElementTree as ET
from typing import List
from urllib.parse import quote

from sourcing.search_providers.base import Candidate, DiagnosticTrace, ProviderResult, SearchProvider
from sourcing.search_providers.shared import *  # noqa: F403

_ITEM_TITLE = re.compile(r"<title><!\[CDATA\[(.*?)\]\]></title>|<title>(.*?)</title>", re.I | re.S)
_ITEM_LINK = re.compile(r"<link>(.*?)</link>", re.I | re.S)
_ITEM_DESC = re.compile(
    r"<description><!\[CDATA\[(.*?)\]\]></description>|<description>(.*?)</description>", re.I | re.S
)
_TAGS = re.compile(r"<[^>]+>")


class BingRssProvider(SearchProvider):
    """RSS-выдача Bing: без ключей, поэтому всегда доступна."""

    name = "bing"

    async def search(self, query: str, limit: int) -> ProviderResult:
        trace = DiagnosticTrace()
        found = await _first_variant_with_results(  # noqa: F405
            self.name, _query_variants(query), self._attempt, trace  # noqa: F405
        )
        trace.count(f"{self.name}:parsed", len(found))
        return ProviderResult(candidates=found[: max(0, limit)], trace=trace)

    async def _attempt(self, variant: str, trace: DiagnosticTrace) -> List[Candidate]:
        url = f"https://www.bing.com/search?q={quote(variant)}&setlang=en-US&cc=US&adlt=strict&format=rss"
        status, text, title, final_url, err = await _fetch_with_httpx_status(  # noqa: F405
            self.name, url, timeout=settings.serp_timeout_seconds  # noqa: F405
        )
        if err or not text or status >= 400:
            trace.note(f"{self.name} {status or err}")
            return []
        if "<item" not in text:
            reason = _block_reason(title, text)  # noqa: F405
            if reason:
                trace.note(f"{self.name}: blocked ({reason})")
                trace.count(f"{self.name}:blocked")
                return []
        items = _finalize_candidates(self._parse_rss(text), settings.max_candidates)  # noqa: F405
        if not items:
            debug_path = _write_debug_html(self.name, text)  # noqa: F405
            logger.error("%s: parsed 0 items (status=%s, debug=%r)", self.name, status, debug_path)  # noqa: F405
        return items

    def _parse_rss(self, text: str) -> List[Candidate]:
        try:
            return self._parse_xml(text)
        except ET.ParseError:
            # RSS Bing иногда приходит с битыми сущностями; режем по <item> регулярками.
            return self._parse_loose(text)

    def _parse_xml(self, text: str) -> List[Candidate]:
        root = ET.fromstring(text.strip())
        out: List[Candidate] = []
        for item in root.iter("item"):
            link = (item.findtext("link") or "").strip()
            if not _first_http_url(link):  # noqa: F405
                continue
            desc = _TAGS.sub("", item.findtext("description") or "")
            out.append(
                Candidate(
                    url=link,
                    title=_clean_title(item.findtext("title") or "") or None,  # noqa: F405
                    snippet=_clean_title(desc) or None,  # noqa: F405
                )
            )
            if len(out) >= 80:
                break
        return out

    def _parse_loose(self, text: str) -> List[Candidate]:
        out: List[Candidate] = []
        for chunk in text.split("<item>")[1:101]:
            t = _ITEM_TITLE.search(chunk)
            link_m = _ITEM_LINK.search(chunk)
            d = _ITEM_DESC.search(chunk)
            link = (link_m.group(1) if link_m else "").strip()
            if not re.match(r"^https?://", link, re.I):
                continue
            title = (t.group(1) or t.group(2) or "") if t else ""
            desc = (d.group(1) or d.group(2) or "") if d else ""
            out.append(
                Candidate(
                    url=link,
                    title=_clean_title(title) or None,  # noqa: F405
                    snippet=_clean_title(_TAGS.sub("", desc)) or None,  # noqa: F405
                )
            )
            if len(out) >= 80:
                break
        return out
