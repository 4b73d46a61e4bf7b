from __future__ import annotations

"""
pattern_learn.py — выучить regex detail-URL по образцам.

Берём первый образец, отрезаем последний сегмент пути (это id карточки),
остальное экранируем и фиксируем как префикс:

  https://x.se/bil/volvo-v70-abc123  ->  ^https?://[^/]+/bil/[^/]+/?$

Паттерн носит рекомендательный характер: его используют стратегии discovery,
сам движок по нему ничего не фильтрует.
"""

import logging
import re
from typing import Iterable, Sequence
from urllib.parse import urlsplit

from .keying import DEFAULT_DETAIL_URL_TOKENS, is_likely_detail_url


logger = logging.getLogger(__name__)

MATCH_ALL = ".*"
_REGEX_META = re.compile(r"[.*+?^${}()|\[\]\\]")


def escape_regex(text: str) -> str:
    """Экранировать только метасимволы regex; "-" и прочее остаётся как есть."""
    return _REGEX_META.sub(lambda m: "\\" + m.group(0), text)


def learn_detail_url_pattern(sample_urls: Sequence[str]) -> list[str]:
    if not sample_urls:
        return []
    try:
        path = urlsplit(sample_urls[0]).path
    except (TypeError, ValueError):
        return [MATCH_ALL]
    segments = [s for s in (path or "").split("/") if s]
    if len(segments) < 2:
        return [MATCH_ALL]
    prefix = escape_regex("/".join(segments[:-1]))
    return [f"^https?://[^/]+/{prefix}/[^/]+/?$"]


def pick_pattern_samples(
    urls: Iterable[str],
    *,
    limit: int = 3,
    tokens: Iterable[str] = DEFAULT_DETAIL_URL_TOKENS,
) -> list[str]:
    """До limit URL для обучения: сначала похожие на detail, потом остальные."""
    toks = tuple(tokens)
    all_urls = [u for u in urls if isinstance(u, str) and u]
    likely = [u for u in all_urls if is_likely_detail_url(u, toks)]
    rest = [u for u in all_urls if u not in likely]
    return (likely + rest)[: max(0, limit)]


def matches_detail_pattern(url: str, patterns: Sequence[str]) -> bool:
    """Пустой список паттернов пропускает всё; битый regex пропускается."""
    if not patterns:
        return True
    for p in patterns:
        try:
            if re.search(p, url):
                return True
        except re.error:
            logger.debug("skipping invalid detail pattern %r", p)
    return False
