from __future__ import annotations

"""
settings.py — одна структура настроек движка, собирается ОДИН раз и передаётся вниз.

Источники (по приоритету):
- dict-конфиг (settings_from_cfg) — для CLI/тестов;
- переменные окружения (settings_from_env) — для воркеров.

ENV:
  MAX_NEW_PER_RUN          override лимита detail-fetch за прогон
  FETCH_DELAY_MS           override паузы между detail-fetch
  REMOVAL_MIN_DISCOVERED   порог removal guard (по умолчанию 1)
  MAX_HTML_BYTES_FOR_PARSE обрезка HTML перед разбором (по умолчанию 200000)
  HEADLESS_ENABLED         1/true/yes -> разрешить headless драйвер
  HEADLESS_PROVIDER        провайдер headless (поддерживается только playwright-local)
  SIMULATE_REMOVALS        1 -> отбросить 10% найденных items (проверка удалений)
  LISTING_FARM_USER_AGENT  User-Agent для HTTP
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


logger = logging.getLogger(__name__)

DEFAULT_MAX_HTML_BYTES = 200000
DEFAULT_REMOVAL_THRESHOLD = 1
DEFAULT_HEADLESS_PROVIDER = "playwright-local"
DEFAULT_USER_AGENT = "listing-farm/0.1 (+inventory sync)"
SIMULATED_REMOVALS_FRACTION = 0.1

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CrawlSettings:
    max_new_per_run: Optional[int] = None
    fetch_delay_ms: Optional[int] = None
    removal_threshold: int = DEFAULT_REMOVAL_THRESHOLD
    max_html_bytes: int = DEFAULT_MAX_HTML_BYTES
    headless_enabled: bool = False
    headless_provider: str = DEFAULT_HEADLESS_PROVIDER
    simulate_removals_fraction: Optional[float] = None
    user_agent: str = DEFAULT_USER_AGENT
    # meta.http для HttpEngine: {"rate_limit": {...}, "retries": {...}, "diag_http": bool}
    http: dict[str, Any] = field(default_factory=dict)


def _env_int(env: Mapping[str, str], name: str, *, minimum: int = 0) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return None
    try:
        val = int(str(raw).strip())
    except ValueError:
        logger.warning("ignoring non-integer %s=%r", name, raw)
        return None
    if val < minimum:
        logger.warning("ignoring out-of-range %s=%r", name, raw)
        return None
    return val


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in _TRUTHY


def settings_from_env(env: Optional[Mapping[str, str]] = None) -> CrawlSettings:
    """Собрать CrawlSettings из окружения (env=None -> os.environ)."""
    env = os.environ if env is None else env

    simulate = None
    if str(env.get("SIMULATE_REMOVALS") or "").strip() == "1":
        simulate = SIMULATED_REMOVALS_FRACTION

    removal = _env_int(env, "REMOVAL_MIN_DISCOVERED", minimum=1)
    max_html = _env_int(env, "MAX_HTML_BYTES_FOR_PARSE", minimum=1)

    return CrawlSettings(
        max_new_per_run=_env_int(env, "MAX_NEW_PER_RUN", minimum=1),
        fetch_delay_ms=_env_int(env, "FETCH_DELAY_MS"),
        removal_threshold=removal if removal is not None else DEFAULT_REMOVAL_THRESHOLD,
        max_html_bytes=max_html if max_html is not None else DEFAULT_MAX_HTML_BYTES,
        headless_enabled=_truthy(env.get("HEADLESS_ENABLED")),
        headless_provider=str(env.get("HEADLESS_PROVIDER") or DEFAULT_HEADLESS_PROVIDER).strip(),
        simulate_removals_fraction=simulate,
        user_agent=str(env.get("LISTING_FARM_USER_AGENT") or DEFAULT_USER_AGENT),
    )


def settings_from_cfg(cfg: Optional[dict[str, Any]], *, base: Optional[CrawlSettings] = None) -> CrawlSettings:
    """
    Наложить dict-конфиг (snake_case ключи CrawlSettings) поверх base.

    Пример:
      {"max_new_per_run": 10, "removal_threshold": 5, "http": {"rate_limit": {"rate_per_sec": 2}}}
    """
    b = base or CrawlSettings()
    if not isinstance(cfg, dict):
        return b

    def opt_int(key: str, cur: Optional[int]) -> Optional[int]:
        if key not in cfg:
            return cur
        v = cfg.get(key)
        if v is None:
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            logger.warning("ignoring invalid %s=%r in settings", key, v)
            return cur

    frac = b.simulate_removals_fraction
    if "simulate_removals_fraction" in cfg:
        raw = cfg.get("simulate_removals_fraction")
        try:
            frac = float(raw) if raw is not None else None
        except (TypeError, ValueError):
            logger.warning("ignoring invalid simulate_removals_fraction=%r", raw)

    http = cfg.get("http")
    return CrawlSettings(
        max_new_per_run=opt_int("max_new_per_run", b.max_new_per_run),
        fetch_delay_ms=opt_int("fetch_delay_ms", b.fetch_delay_ms),
        removal_threshold=opt_int("removal_threshold", b.removal_threshold) or DEFAULT_REMOVAL_THRESHOLD,
        max_html_bytes=opt_int("max_html_bytes", b.max_html_bytes) or DEFAULT_MAX_HTML_BYTES,
        headless_enabled=_truthy(cfg["headless_enabled"]) if "headless_enabled" in cfg else b.headless_enabled,
        headless_provider=str(cfg.get("headless_provider") or b.headless_provider),
        simulate_removals_fraction=frac,
        user_agent=str(cfg.get("user_agent") or b.user_agent),
        http=dict(http) if isinstance(http, dict) else dict(b.http),
    )
