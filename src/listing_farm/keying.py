from __future__ import annotations

"""keying.py — единая логика URL карточек: нормализация, sourceItemId, "похоже на detail".

Зачем:
- discovery-стратегии хотят стабильный sourceItemId из URL
- probe хочет отличать detail-страницы от листингов
- чтобы не было расхождений между модулями, держим это в одном месте
"""

import hashlib
import re
from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from .site_profile import IdFromUrl


DEFAULT_DETAIL_URL_TOKENS: tuple[str, ...] = (
    "/bil/",
    "/kopa-bil/",
    "/fordon/",
    "/car/",
    "/cars/",
    "/vehicle/",
    "/auto/",
    "/listing/",
    "/listings/",
    "/item/",
    "/product/",
)


def _sha1(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8")).hexdigest()


def normalize_url(
    url: str,
    *,
    base_url: Optional[str] = None,
    strip_query: bool = False,
    same_host: bool = False,
) -> Optional[str]:
    """
    Привести URL к каноничному виду:
    - относительный -> абсолютный (если дан base_url)
    - без #fragment, опционально без ?query
    - без завершающего "/" (кроме корня)
    same_host=True: URL с другим хостом -> None.
    """
    raw = (url or "").strip()
    if not raw:
        return None
    if base_url:
        raw = urljoin(base_url, raw)
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    if same_host and base_url:
        if urlsplit(base_url).netloc.lower() != parts.netloc.lower():
            return None
    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    query = "" if strip_query else parts.query
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))


def _path_segments(url: str) -> list[str]:
    try:
        path = urlsplit(url).path
    except ValueError:
        return []
    return [s for s in path.split("/") if s]


def extract_source_item_id(url: str, rule: Optional[IdFromUrl] = None) -> str:
    """
    sourceItemId из URL по правилу профиля.

    Приоритет:
    1) mode=regex: group(1) (или весь матч)
    2) последний сегмент пути
    3) fallback: sha1(url)[:12]
    Результат в нижнем регистре.
    """
    r = rule or IdFromUrl()
    if r.mode == "regex" and r.regex:
        try:
            m = re.search(r.regex, url)
        except re.error:
            m = None
        if m:
            val = m.group(1) if m.groups() else m.group(0)
            if val:
                return str(val).strip().lower()

    segs = _path_segments(url)
    if segs:
        return segs[-1].strip().lower()
    return _sha1(url)[:12]


def ensure_unique_id(item_id: str, url: str, seen: set[str]) -> str:
    """Если id уже занят другим URL — добавить суффикс "-<sha1(url)[:6]>"."""
    out = item_id
    if out in seen:
        out = f"{item_id}-{_sha1(url)[:6]}"
    seen.add(out)
    return out


def is_likely_detail_url(url: str, tokens: Iterable[str] = DEFAULT_DETAIL_URL_TOKENS) -> bool:
    low = (url or "").lower()
    return any(t in low for t in tokens)
