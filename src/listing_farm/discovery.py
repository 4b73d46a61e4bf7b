from __future__ import annotations

"""
discovery.py — стратегии поиска detail-URL и их диспетчеризация.

Стратегия = имя из закрытого набора + функция единой сигнатуры:

    fn(fetcher, profile, ctx) -> DiscoveryResult | list[str | dict | DiscoveredItem]

Сами парсеры (sitemap XML, HTML-ссылки, перехват API, headless-листинг) подключаются
плагином через StrategyRegistry. Порядок каскада задан явно (STRATEGY_ORDER):
дешёвые стратегии раньше дорогих.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from .drivers import Fetcher
from .errors import StrategyNotRegistered
from .keying import ensure_unique_id, extract_source_item_id, normalize_url
from .site_profile import SiteProfile


logger = logging.getLogger(__name__)

STRATEGY_ORDER: tuple[str, ...] = ("sitemap", "html_links", "endpoint_sniff", "headless_listing")


@dataclass
class DiscoveredItem:
    source_item_id: str
    url: str


@dataclass
class DiscoveryResult:
    items: list[DiscoveredItem] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveryContext:
    base_url: str
    max_pages: int = 50
    max_items: int = 500
    max_duration_ms: int = 300000


RawDiscovery = Union[DiscoveryResult, Iterable[Union[str, dict, DiscoveredItem]]]
StrategyFn = Callable[[Fetcher, SiteProfile, DiscoveryContext], RawDiscovery]


class StrategyRegistry:
    """Явная таблица name -> fn. Неизвестные имена отклоняются."""

    def __init__(self, strategies: Optional[dict[str, StrategyFn]] = None) -> None:
        self._fns: dict[str, StrategyFn] = {}
        for name, fn in (strategies or {}).items():
            self.register(name, fn)

    def register(self, name: str, fn: StrategyFn) -> None:
        if name not in STRATEGY_ORDER:
            raise ValueError(f"Unknown discovery strategy: {name!r}. Expected one of: {', '.join(STRATEGY_ORDER)}")
        self._fns[name] = fn

    def get(self, name: str) -> Optional[StrategyFn]:
        return self._fns.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._fns

    def names(self) -> list[str]:
        return [n for n in STRATEGY_ORDER if n in self._fns]


def context_for(profile: SiteProfile, base_url: str) -> DiscoveryContext:
    return DiscoveryContext(
        base_url=base_url,
        max_pages=profile.limits.max_pages,
        max_items=profile.limits.max_items,
        max_duration_ms=profile.limits.max_duration_ms,
    )


def coerce_discovery(raw: Any, profile: SiteProfile, base_url: str) -> DiscoveryResult:
    """
    Привести ответ стратегии к DiscoveryResult:
    - строка -> URL, id из URL по profile.discovery.id_from_url
    - dict -> {"url": ..., "source_item_id"/"sourceItemId": ...}
    - повтор того же URL отбрасывается, конфликт id у разных URL -> суффикс
    """
    if isinstance(raw, DiscoveryResult):
        entries: Iterable[Any] = raw.items
        meta = dict(raw.meta)
    elif raw is None:
        entries, meta = [], {}
    else:
        entries, meta = raw, {}

    seen_urls: set[str] = set()
    seen_ids: set[str] = set()
    out: list[DiscoveredItem] = []
    for e in entries:
        if isinstance(e, DiscoveredItem):
            url, sid = e.url, e.source_item_id
        elif isinstance(e, dict):
            url = str(e.get("url") or "")
            sid = e.get("source_item_id") or e.get("sourceItemId")
        elif isinstance(e, str):
            url, sid = e, None
        else:
            continue

        norm = normalize_url(url, base_url=base_url)
        if norm is None or norm in seen_urls:
            continue
        seen_urls.add(norm)
        item_id = str(sid).strip().lower() if sid else extract_source_item_id(norm, profile.discovery.id_from_url)
        out.append(DiscoveredItem(source_item_id=ensure_unique_id(item_id, norm, seen_ids), url=norm))

    return DiscoveryResult(items=out, meta=meta)


def simulate_removals(items: list[DiscoveredItem], fraction: Optional[float]) -> list[DiscoveredItem]:
    """Отбросить хвост списка: остаётся max(1, floor(n * (1 - fraction)))."""
    if not items or not fraction or fraction <= 0:
        return items
    keep = max(1, int(math.floor(len(items) * (1.0 - min(fraction, 1.0)))))
    return items[:keep]


class StrategyDiscoverer:
    """
    Discoverer по умолчанию: вызывает стратегию, записанную в профиле.

    headless_listing получает headless_fetcher (если передан), остальные — fetcher.
    run_strategy: незарегистрированная стратегия -> пустой результат (probe перебирает все).
    discover: незарегистрированная стратегия профиля -> StrategyNotRegistered, а не "пустой сайт".
    """

    def __init__(self, registry: StrategyRegistry) -> None:
        self.registry = registry

    def run_strategy(
        self,
        name: str,
        profile: SiteProfile,
        base_url: str,
        fetcher: Fetcher,
        *,
        headless_fetcher: Optional[Fetcher] = None,
    ) -> DiscoveryResult:
        fn = self.registry.get(name)
        if fn is None:
            logger.info("discovery strategy %s is not registered", name)
            return DiscoveryResult(meta={"strategy": name, "registered": False})
        use = headless_fetcher if (name == "headless_listing" and headless_fetcher is not None) else fetcher
        res = coerce_discovery(fn(use, profile, context_for(profile, base_url)), profile, base_url)
        res.meta.setdefault("strategy", name)
        return res

    def discover(
        self,
        profile: SiteProfile,
        base_url: str,
        fetcher: Fetcher,
        *,
        headless_fetcher: Optional[Fetcher] = None,
        simulate_removals_fraction: Optional[float] = None,
    ) -> DiscoveryResult:
        if profile.discovery.strategy not in self.registry:
            raise StrategyNotRegistered(profile.discovery.strategy)
        res = self.run_strategy(
            profile.discovery.strategy, profile, base_url, fetcher, headless_fetcher=headless_fetcher,
        )
        if simulate_removals_fraction:
            before = len(res.items)
            res.items = simulate_removals(res.items, simulate_removals_fraction)
            res.meta["simulatedRemovals"] = before - len(res.items)
        return res
