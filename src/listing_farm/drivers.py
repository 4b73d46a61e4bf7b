from __future__ import annotations

"""
drivers.py — способность "скачать страницу" (Fetcher) с двумя реализациями:

- HttpFetcher     — requests через HttpEngine (rate limit + retry)
- HeadlessFetcher — Playwright через browser_engine (только если HEADLESS_ENABLED)

Выбор — по profile.fetch.driver (get_fetcher). Сетевые сбои HttpFetcher НЕ бросает:
возвращает status=None, body="" и trace.error. HTML длиннее лимита обрезается,
факт обрезки виден в trace (html_truncated / original_bytes / truncated_bytes).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .browser_engine import render_page
from .errors import CrawlError, HeadlessDisabledError
from .http_engine import HttpEngine, make_http_engine_from_cfg
from .resp_read import read_text_safely, truncate_html
from .settings import CrawlSettings
from .site_profile import SiteProfile


logger = logging.getLogger(__name__)

SUPPORTED_HEADLESS_PROVIDERS = ("playwright-local",)


@dataclass
class FetchTrace:
    url: str
    final_url: str
    status: Optional[int]
    duration_ms: int
    driver: str = "http"
    error: Optional[str] = None
    html_truncated: bool = False
    original_bytes: int = 0
    truncated_bytes: int = 0


@dataclass
class FetchResult:
    final_url: str
    status: Optional[int]
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    trace: Optional[FetchTrace] = None


class Fetcher(Protocol):
    def fetch(self, url: str, *, timeout_ms: Optional[int] = None) -> FetchResult:
        ...


class HttpFetcher:
    def __init__(
        self,
        *,
        engine: Optional[HttpEngine] = None,
        max_html_bytes: int = 200000,
        default_timeout_ms: int = 15000,
    ) -> None:
        self.engine = engine or HttpEngine(default_timeout=default_timeout_ms / 1000.0)
        self.max_html_bytes = int(max_html_bytes)
        self.default_timeout_ms = int(default_timeout_ms)

    def fetch(self, url: str, *, timeout_ms: Optional[int] = None) -> FetchResult:
        t_ms = int(timeout_ms or self.default_timeout_ms)
        t0 = time.monotonic()
        resp, err, _elapsed = self.engine.request(url, timeout=t_ms / 1000.0)
        duration_ms = int((time.monotonic() - t0) * 1000)

        if resp is None:
            return FetchResult(
                final_url=url,
                status=None,
                body="",
                trace=FetchTrace(url=url, final_url=url, status=None, duration_ms=duration_ms, error=err),
            )

        payload = read_text_safely(resp)
        text = payload.text if payload is not None else ""
        cut = truncate_html(text, self.max_html_bytes)
        final_url = str(resp.url or url)
        return FetchResult(
            final_url=final_url,
            status=int(resp.status_code),
            body=cut.text,
            headers={str(k): str(v) for k, v in (resp.headers or {}).items()},
            trace=FetchTrace(
                url=url,
                final_url=final_url,
                status=int(resp.status_code),
                duration_ms=duration_ms,
                error=err,
                html_truncated=cut.truncated,
                original_bytes=cut.original_bytes,
                truncated_bytes=cut.truncated_bytes,
            ),
        )


class HeadlessFetcher:
    def __init__(
        self,
        *,
        enabled: bool,
        provider: str = "playwright-local",
        default_timeout_ms: int = 30000,
        wait_for: Optional[str] = None,
        user_agent: Optional[str] = None,
        max_html_bytes: int = 200000,
    ) -> None:
        self.enabled = bool(enabled)
        self.provider = provider
        self.default_timeout_ms = int(default_timeout_ms)
        self.wait_for = wait_for
        self.user_agent = user_agent
        self.max_html_bytes = int(max_html_bytes)

    def fetch(self, url: str, *, timeout_ms: Optional[int] = None) -> FetchResult:
        if not self.enabled:
            raise HeadlessDisabledError()
        if self.provider not in SUPPORTED_HEADLESS_PROVIDERS:
            raise CrawlError(f"Unsupported headless provider: {self.provider}")

        r = render_page(
            url,
            timeout_ms=int(timeout_ms or self.default_timeout_ms),
            wait_for=self.wait_for,
            user_agent=self.user_agent,
        )
        if r.error:
            logger.info("headless render failed url=%s err=%s", url, r.error)
        cut = truncate_html(r.html, self.max_html_bytes)
        return FetchResult(
            final_url=r.final_url or url,
            status=r.status,
            body=cut.text,
            trace=FetchTrace(
                url=url,
                final_url=r.final_url or url,
                status=r.status,
                duration_ms=r.duration_ms,
                driver="headless",
                error=r.error,
                html_truncated=cut.truncated,
                original_bytes=cut.original_bytes,
                truncated_bytes=cut.truncated_bytes,
            ),
        )


def make_http_fetcher(
    settings: CrawlSettings,
    *,
    timeout_ms: int = 15000,
    user_agent: Optional[str] = None,
) -> HttpFetcher:
    engine = make_http_engine_from_cfg(
        settings.http,
        default_timeout=timeout_ms / 1000.0,
        user_agent=user_agent or settings.user_agent,
    )
    return HttpFetcher(engine=engine, max_html_bytes=settings.max_html_bytes, default_timeout_ms=timeout_ms)


def make_headless_fetcher(settings: CrawlSettings, profile: Optional[SiteProfile] = None) -> HeadlessFetcher:
    hl = profile.fetch.headless if profile is not None else None
    return HeadlessFetcher(
        enabled=settings.headless_enabled,
        provider=settings.headless_provider,
        default_timeout_ms=hl.timeout_ms if hl is not None else 30000,
        wait_for=hl.wait_for if hl is not None else None,
        user_agent=(profile.fetch.http.user_agent if profile is not None else None) or settings.user_agent,
        max_html_bytes=settings.max_html_bytes,
    )


def get_fetcher(profile: SiteProfile, settings: CrawlSettings) -> Fetcher:
    """Fetcher для detail-страниц по profile.fetch.driver."""
    if profile.fetch.driver == "headless":
        return make_headless_fetcher(settings, profile)
    return make_http_fetcher(
        settings,
        timeout_ms=profile.fetch.http.timeout_ms,
        user_agent=profile.fetch.http.user_agent,
    )
