from __future__ import annotations

"""
site_profile.py — “техкарта” сайта-источника (ядро данных).

Модуль держит ТОЛЬКО структуры данных (dataclasses) и сериализацию.
Он не делает HTTP и не ходит по страницам:
- ДАННЫЕ (что мы знаем о сайте и как его крутить) -> SiteProfile
- ЛОГИКА (как это обнаружить / как это выполнять) -> probe.py / prod_run.py

Профиль пишет probe (один раз / по запросу) в data_sources.config_json,
а production-прогоны только читают его и НЕ угадывают стратегию заново.

Формат JSON профиля (camelCase, как он лежит в config_json)
-----------------------------------------------------------
{
  "profileVersion": 1,
  "probe": {"testedAt": "...", "confidence": 0.9, "notes": []},
  "discovery": {
    "strategy": "sitemap",
    "seedUrls": [], "sitemapUrls": [],
    "detailUrlPatterns": ["^https?://[^/]+/bil/[^/]+/?$"],
    "idFromUrl": {"mode": "last_segment"}
  },
  "fetch": {"driver": "http", "http": {"timeoutMs": 15000},
            "headless": {"enabled": false, "timeoutMs": 30000}},
  "extract": {"vertical": "vehicle", "strategy": "dom"},
  "limits": {"concurrency": 6, "maxNewPerRun": 50, ...}
}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional


PROFILE_VERSION = 1

DiscoveryStrategyName = Literal["sitemap", "html_links", "endpoint_sniff", "headless_listing", "unknown"]
FetchDriver = Literal["http", "headless"]
Vertical = Literal["vehicle", "generic"]

DISCOVERY_STRATEGIES: tuple[str, ...] = ("sitemap", "html_links", "endpoint_sniff", "headless_listing", "unknown")
FETCH_DRIVERS: tuple[str, ...] = ("http", "headless")
VERTICALS: tuple[str, ...] = ("vehicle", "generic")
EXTRACT_STRATEGIES: tuple[str, ...] = ("schema_org", "dom", "embedded_json", "hybrid")
ID_FROM_URL_MODES: tuple[str, ...] = ("last_segment", "regex")

DEFAULT_HTTP_TIMEOUT_MS = 15000
DEFAULT_HEADLESS_TIMEOUT_MS = 30000

# жёсткие дефолты лимитов; профиль может переопределить любое поле
DEFAULT_LIMITS: dict[str, Any] = {
    "concurrency": 6,
    "maxNewPerRun": 50,
    "politenessDelayMs": 0,
    "maxPages": 50,
    "maxItems": 500,
    "maxDurationMs": 300000,
}


def _deep_merge(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Рекурсивно слить dict b поверх a (b имеет приоритет)."""
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _str_list(x: Any) -> list[str]:
    if not isinstance(x, (list, tuple)):
        return []
    return [s for s in x if isinstance(s, str) and s.strip()]


def _int_or(x: Any, default: int) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _opt_int(x: Any) -> Optional[int]:
    if x is None or isinstance(x, bool):
        return None
    try:
        return int(x)
    except (TypeError, ValueError):
        return None


def _pick(value: Any, allowed: tuple[str, ...], default: str) -> str:
    s = str(value or "").strip().lower()
    return s if s in allowed else default


@dataclass
class ProbeInfo:
    """Результат probe: когда тестировали, насколько уверены и что подсказать оператору."""
    tested_at: str = ""
    confidence: float = 0.0
    notes: list[str] = field(default_factory=list)


@dataclass
class IdFromUrl:
    """
    Как получить sourceItemId из URL карточки:
    - last_segment: последний сегмент пути
    - regex: первая группа regex (или весь матч)
    """
    mode: str = "last_segment"
    regex: Optional[str] = None


@dataclass
class DiscoverySpec:
    strategy: str = "unknown"
    seed_urls: list[str] = field(default_factory=list)
    sitemap_urls: list[str] = field(default_factory=list)
    detail_url_patterns: list[str] = field(default_factory=list)
    id_from_url: IdFromUrl = field(default_factory=IdFromUrl)


@dataclass
class HttpFetchSpec:
    timeout_ms: int = DEFAULT_HTTP_TIMEOUT_MS
    user_agent: Optional[str] = None


@dataclass
class HeadlessFetchSpec:
    enabled: bool = False
    timeout_ms: int = DEFAULT_HEADLESS_TIMEOUT_MS
    wait_for: Optional[str] = None


@dataclass
class FetchSpec:
    driver: str = "http"
    http: HttpFetchSpec = field(default_factory=HttpFetchSpec)
    headless: HeadlessFetchSpec = field(default_factory=HeadlessFetchSpec)


@dataclass
class ExtractSpec:
    vertical: str = "generic"
    strategy: str = "dom"
    rules: dict[str, Any] = field(default_factory=dict)


@dataclass
class Limits:
    """
    Лимиты прогона. removal_threshold — необязательный override порога
    removal guard (минимум найденных items, при котором разрешены удаления).
    """
    concurrency: int = DEFAULT_LIMITS["concurrency"]
    max_new_per_run: int = DEFAULT_LIMITS["maxNewPerRun"]
    politeness_delay_ms: int = DEFAULT_LIMITS["politenessDelayMs"]
    max_pages: int = DEFAULT_LIMITS["maxPages"]
    max_items: int = DEFAULT_LIMITS["maxItems"]
    max_duration_ms: int = DEFAULT_LIMITS["maxDurationMs"]
    removal_threshold: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "concurrency": self.concurrency,
            "maxNewPerRun": self.max_new_per_run,
            "politenessDelayMs": self.politeness_delay_ms,
            "maxPages": self.max_pages,
            "maxItems": self.max_items,
            "maxDurationMs": self.max_duration_ms,
        }
        if self.removal_threshold is not None:
            d["removalThreshold"] = self.removal_threshold
        return d

    @staticmethod
    def from_dict(d: Optional[dict[str, Any]]) -> "Limits":
        merged = _deep_merge(DEFAULT_LIMITS, d if isinstance(d, dict) else {})
        return Limits(
            concurrency=_int_or(merged.get("concurrency"), DEFAULT_LIMITS["concurrency"]),
            max_new_per_run=_int_or(merged.get("maxNewPerRun"), DEFAULT_LIMITS["maxNewPerRun"]),
            politeness_delay_ms=_int_or(merged.get("politenessDelayMs"), DEFAULT_LIMITS["politenessDelayMs"]),
            max_pages=_int_or(merged.get("maxPages"), DEFAULT_LIMITS["maxPages"]),
            max_items=_int_or(merged.get("maxItems"), DEFAULT_LIMITS["maxItems"]),
            max_duration_ms=_int_or(merged.get("maxDurationMs"), DEFAULT_LIMITS["maxDurationMs"]),
            removal_threshold=_opt_int(merged.get("removalThreshold")),
        )


@dataclass
class SiteProfile:
    """
    SiteProfile — профиль (техкарта) одного сайта-источника.

    Практическая мысль:
    - профиль хранится в JSON (config_json источника) и применяется каждым прогоном;
    - prod_run.py работает по профилю и НЕ угадывает;
    - strategy == "unknown" — валидный итог probe, но production такой профиль не запускает.
    """
    profile_version: int = PROFILE_VERSION
    probe: ProbeInfo = field(default_factory=ProbeInfo)
    discovery: DiscoverySpec = field(default_factory=DiscoverySpec)
    fetch: FetchSpec = field(default_factory=FetchSpec)
    extract: ExtractSpec = field(default_factory=ExtractSpec)
    limits: Limits = field(default_factory=Limits)

    def to_dict(self) -> dict[str, Any]:
        """Сериализация в JSON-friendly dict (camelCase ключи)."""
        id_rule: dict[str, Any] = {"mode": self.discovery.id_from_url.mode}
        if self.discovery.id_from_url.regex:
            id_rule["regex"] = self.discovery.id_from_url.regex

        http: dict[str, Any] = {"timeoutMs": self.fetch.http.timeout_ms}
        if self.fetch.http.user_agent:
            http["userAgent"] = self.fetch.http.user_agent
        headless: dict[str, Any] = {
            "enabled": self.fetch.headless.enabled,
            "timeoutMs": self.fetch.headless.timeout_ms,
        }
        if self.fetch.headless.wait_for:
            headless["waitFor"] = self.fetch.headless.wait_for

        extract: dict[str, Any] = {"vertical": self.extract.vertical, "strategy": self.extract.strategy}
        if self.extract.rules:
            extract["rules"] = dict(self.extract.rules)

        return {
            "profileVersion": self.profile_version,
            "probe": {
                "testedAt": self.probe.tested_at,
                "confidence": self.probe.confidence,
                "notes": list(self.probe.notes),
            },
            "discovery": {
                "strategy": self.discovery.strategy,
                "seedUrls": list(self.discovery.seed_urls),
                "sitemapUrls": list(self.discovery.sitemap_urls),
                "detailUrlPatterns": list(self.discovery.detail_url_patterns),
                "idFromUrl": id_rule,
            },
            "fetch": {"driver": self.fetch.driver, "http": http, "headless": headless},
            "extract": extract,
            "limits": self.limits.to_dict(),
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "SiteProfile":
        """
        Десериализация из dict.

        Терпимый разбор: неизвестные значения enum -> дефолт,
        списки фильтруются до строк, limits сливаются поверх DEFAULT_LIMITS.
        """
        d = d if isinstance(d, dict) else {}
        pr = d.get("probe") if isinstance(d.get("probe"), dict) else {}
        disc = d.get("discovery") if isinstance(d.get("discovery"), dict) else {}
        fe = d.get("fetch") if isinstance(d.get("fetch"), dict) else {}
        ext = d.get("extract") if isinstance(d.get("extract"), dict) else {}

        id_raw = disc.get("idFromUrl") if isinstance(disc.get("idFromUrl"), dict) else {}
        id_regex = id_raw.get("regex")
        http_raw = fe.get("http") if isinstance(fe.get("http"), dict) else {}
        hl_raw = fe.get("headless") if isinstance(fe.get("headless"), dict) else {}

        try:
            confidence = float(pr.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0

        return SiteProfile(
            profile_version=_int_or(d.get("profileVersion"), PROFILE_VERSION),
            probe=ProbeInfo(
                tested_at=str(pr.get("testedAt") or ""),
                confidence=confidence,
                notes=_str_list(pr.get("notes")),
            ),
            discovery=DiscoverySpec(
                strategy=_pick(disc.get("strategy"), DISCOVERY_STRATEGIES, "unknown"),
                seed_urls=_str_list(disc.get("seedUrls")),
                sitemap_urls=_str_list(disc.get("sitemapUrls")),
                detail_url_patterns=_str_list(disc.get("detailUrlPatterns")),
                id_from_url=IdFromUrl(
                    mode=_pick(id_raw.get("mode"), ID_FROM_URL_MODES, "last_segment"),
                    regex=id_regex if isinstance(id_regex, str) and id_regex.strip() else None,
                ),
            ),
            fetch=FetchSpec(
                driver=_pick(fe.get("driver"), FETCH_DRIVERS, "http"),
                http=HttpFetchSpec(
                    timeout_ms=_int_or(http_raw.get("timeoutMs"), DEFAULT_HTTP_TIMEOUT_MS),
                    user_agent=http_raw.get("userAgent") if isinstance(http_raw.get("userAgent"), str) else None,
                ),
                headless=HeadlessFetchSpec(
                    enabled=bool(hl_raw.get("enabled", False)),
                    timeout_ms=_int_or(hl_raw.get("timeoutMs"), DEFAULT_HEADLESS_TIMEOUT_MS),
                    wait_for=hl_raw.get("waitFor") if isinstance(hl_raw.get("waitFor"), str) else None,
                ),
            ),
            extract=ExtractSpec(
                vertical=_pick(ext.get("vertical"), VERTICALS, "generic"),
                strategy=_pick(ext.get("strategy"), EXTRACT_STRATEGIES, "dom"),
                rules=dict(ext.get("rules")) if isinstance(ext.get("rules"), dict) else {},
            ),
            limits=Limits.from_dict(d.get("limits")),
        )


def resolve_profile(config: Any) -> Optional[SiteProfile]:
    """
    Достать рабочий профиль из config_json источника.

    None означает "профиля нет / устарел" (production -> PROFILE_MISSING):
    - config не dict (или пустая/битая JSON-строка),
    - нет числового profileVersion,
    - нет discovery или strategy отсутствует / "unknown".
    """
    if isinstance(config, str):
        try:
            config = json.loads(config) if config.strip() else None
        except ValueError:
            return None
    if not isinstance(config, dict):
        return None
    version = config.get("profileVersion")
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        return None
    disc = config.get("discovery")
    if not isinstance(disc, dict):
        return None
    strategy = disc.get("strategy")
    if not isinstance(strategy, str) or strategy not in DISCOVERY_STRATEGIES or strategy == "unknown":
        return None
    return SiteProfile.from_dict(config)


def build_trial_profile(base_url: str, strategy: str) -> SiteProfile:
    """Временный профиль для одной попытки каскада (не сохраняется)."""
    seeds = [base_url] if strategy in ("html_links", "endpoint_sniff") else []
    return SiteProfile(
        profile_version=PROFILE_VERSION,
        discovery=DiscoverySpec(strategy=strategy, seed_urls=seeds),
        fetch=FetchSpec(
            driver="http",
            headless=HeadlessFetchSpec(enabled=(strategy == "headless_listing")),
        ),
    )


def load_profile(path: str) -> SiteProfile:
    """Загрузить профиль из JSON-файла."""
    with open(path, "r", encoding="utf-8") as f:
        return SiteProfile.from_dict(json.load(f))


def save_profile(profile: SiteProfile, path: str, *, pretty: bool = True) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(profile.to_dict(), f, ensure_ascii=False, indent=(2 if pretty else None))
