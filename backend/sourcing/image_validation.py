from typing import Optional

from sourcing.config import settings
from sourcing.search_service import _first_http_url, _request_with_timeout, logger


async def validate_image_url(url: Optional[str], *, timeout: Optional[float] = None) -> bool:
    """
    HEAD-запрос к картинке: валидна только при 2xx и content-type image/*.
    Протухшие/гео-закрытые ссылки и заглушки отсеиваются здесь. Никогда не бросает.
    """
    target = _first_http_url(url or "")
    if not target:
        return False
    try:
        resp, err = await _request_with_timeout(
            "image",
            "HEAD",
            target,
            timeout=timeout or settings.image_timeout_seconds,
        )
    except Exception as e:
        logger.error("image: failed: %s: %s", type(e).__name__, e)
        return False
    if resp is None:
        return False
    if not 200 <= resp.status_code < 300:
        return False
    ctype = (resp.headers.get("content-type") or "").strip().lower()
    return ctype.startswith("image/")
