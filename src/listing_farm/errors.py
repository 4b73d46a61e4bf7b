from __future__ import annotations

"""
errors.py — таксономия ошибок прогона и маппинг в event-коды.

Run-level ошибки всегда: run -> failed (error_code/error_message), потом dead-letter.
Ошибки отдельных карточек (detail fetch) сюда не попадают — они считаются и логируются событиями.
"""

from typing import Any, Optional


SCRAPE_TIMEOUT = "SCRAPE_TIMEOUT"
SCRAPE_FETCH_FAIL = "SCRAPE_FETCH_FAIL"
SCRAPE_PARSE_FAIL = "SCRAPE_PARSE_FAIL"
SCRAPE_CRASH = "SCRAPE_CRASH"
NOT_FOUND = "NOT_FOUND"
PROFILE_MISSING = "PROFILE_MISSING"
HEADLESS_DISABLED = "HEADLESS_DISABLED"
STRATEGY_NOT_REGISTERED = "STRATEGY_NOT_REGISTERED"

_TIMEOUT_MARKERS = ("timeout", "timed out", "aborted", "aborterror")
_FETCH_MARKERS = ("dns", "enotfound", "getaddrinfo", "econnrefused", "econnreset",
                  "connectionerror", "connection refused", "connection reset", "name or service not known")
_PARSE_MARKERS = ("parse", "json", "html", "decode")


class CrawlError(Exception):
    """Базовая ошибка движка; code уходит в scrape_runs.error_code и в события."""

    def __init__(self, message: str, *, code: str = SCRAPE_CRASH) -> None:
        super().__init__(message)
        self.code = code


class DataSourceNotFound(CrawlError):
    def __init__(self, data_source_id: str) -> None:
        super().__init__(f"Data source not found: {data_source_id}", code=NOT_FOUND)
        self.data_source_id = data_source_id


class ProfileMissing(CrawlError):
    def __init__(self, message: str = "Site profile missing or stale") -> None:
        super().__init__(message, code=PROFILE_MISSING)


class HeadlessDisabledError(CrawlError):
    def __init__(self, message: str = "Headless driver is disabled (set HEADLESS_ENABLED=1)") -> None:
        super().__init__(message, code=HEADLESS_DISABLED)


class StrategyNotRegistered(CrawlError):
    """Профиль называет стратегию, которой нет в реестре: прогон не может начаться."""

    def __init__(self, strategy: str) -> None:
        super().__init__(f"Discovery strategy not registered: {strategy}", code=STRATEGY_NOT_REGISTERED)
        self.strategy = strategy


class RunStateError(CrawlError):
    """Недопустимый переход статуса прогона (например, повторное завершение)."""


def map_error_to_event_code(err: Any, stage: Optional[str] = None) -> str:
    """
    Грубая классификация исключения в event-код.

    CrawlError сохраняет свой code; остальное — по тексту/типу ошибки,
    затем по стадии (fetch_base_url / parse_minimal), иначе SCRAPE_CRASH.
    """
    if isinstance(err, CrawlError) and err.code != SCRAPE_CRASH:
        return err.code

    name = type(err).__name__.lower() if isinstance(err, BaseException) else ""
    msg = f"{name} {err}".lower()

    if any(m in msg for m in _TIMEOUT_MARKERS):
        return SCRAPE_TIMEOUT
    if any(m in msg for m in _FETCH_MARKERS):
        return SCRAPE_FETCH_FAIL
    if any(m in msg for m in _PARSE_MARKERS):
        return SCRAPE_PARSE_FAIL
    if stage == "fetch_base_url":
        return SCRAPE_FETCH_FAIL
    if stage == "parse_minimal":
        return SCRAPE_PARSE_FAIL
    return SCRAPE_CRASH
