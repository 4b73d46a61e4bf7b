from __future__ import annotations

"""
browser_engine.py — рендер страницы в Chromium (Playwright) для headless-драйвера.

Playwright — опциональная зависимость (extra `headless`). Если его нет, ошибка
возвращается в RenderedPage.error, а не бросается: решать, что делать, будет драйвер.

Один вызов = один браузер: goto(networkidle) -> (опц.) wait_for селектор -> page.content().
Капчу не обходим: при маркерах капчи страница отдаётся с error="captcha_detected" и пустым html.
"""

import time
from dataclasses import dataclass
from typing import Optional

CAPTCHA_MARKERS = ("g-recaptcha", "hcaptcha", "cf-captcha", "captcha-delivery")


@dataclass
class RenderedPage:
    final_url: str
    status: Optional[int]
    html: str
    duration_ms: int
    error: Optional[str] = None


def looks_like_captcha(html: str) -> bool:
    low = (html or "").lower()
    return any(m in low for m in CAPTCHA_MARKERS)


def _pw_import():
    try:
        from playwright.sync_api import Error as PwError, sync_playwright  # type: ignore
    except ImportError as e:
        return None, None, e
    return sync_playwright, PwError, None


def render_page(
    url: str,
    *,
    timeout_ms: int = 30000,
    wait_for: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> RenderedPage:
    sync_playwright, PwError, imp_err = _pw_import()
    if sync_playwright is None:
        return RenderedPage(final_url=url, status=None, html="", duration_ms=0,
                            error=f"playwright_not_installed:{imp_err}")

    t0 = time.monotonic()

    def _ms() -> int:
        return int((time.monotonic() - t0) * 1000)

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=True)
        try:
            context = browser.new_context(user_agent=user_agent) if user_agent else browser.new_context()
            page = context.new_page()
            resp = page.goto(url, wait_until="networkidle", timeout=timeout_ms)
            if wait_for:
                page.wait_for_selector(wait_for, timeout=timeout_ms)
            html = page.content() or ""
            # goto() отдаёт None для same-document навигации: считаем 200
            status = resp.status if resp is not None else 200
            if looks_like_captcha(html):
                return RenderedPage(page.url, status, "", _ms(), error="captcha_detected")
            return RenderedPage(page.url, status, html, _ms())
        except PwError as e:
            return RenderedPage(final_url=url, status=None, html="", duration_ms=_ms(),
                                error=f"playwright_error:{type(e).__name__}")
        finally:
            browser.close()
