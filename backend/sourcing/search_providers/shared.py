"""
Общие помощники для адаптеров поиска.

Адаптеры импортируются из search_service лениво (через фабрики), поэтому
прямой `from sourcing.search_service import ...` на уровне модуля дал бы
циклический импорт. Здесь собран явный список того, что нужно адаптерам.
"""

from sourcing import search_service as _svc

PROVIDER_HELPERS = (
    # HTTP
    "_request_with_timeout",
    "_fetch_with_httpx_status",
    "_httpx_decode",
    "_reader_urls",
    "_block_reason",
    "_write_debug_html",
    # разбор выдачи
    "_abs_url",
    "_clean_title",
    "_first_http_url",
    "_finalize_candidates",
    # запросы
    "_augment_query",
    "_query_variants",
    "_first_variant_with_results",
    # реестр адаптеров
    "_provider_factories",
    "_provider_for_source",
    "logger",
    "settings",
)

__all__ = list(PROVIDER_HELPERS)
globals().update({name: getattr(_svc, name) for name in __all__})
