from __future__ import annotations

"""
http_engine.py — HTTP для discovery и detail fetch: requests.Session + вежливость к хосту + ретраи.

- лимитер на хост (netloc): TokenBucket (первый запрос без ожидания), опционально
  обёрнутый MinDelayWrapper (минимальная пауза + jitter);
- ретраи только на transient статусы (429/5xx) и сетевые сбои, с экспоненциальным
  backoff; Retry-After (секунды или HTTP-date) имеет приоритет, но не больше cap_delay;
- сетевые исключения наружу НЕ выходят: request() возвращает (resp|None, err|None, elapsed_ms).

Конфиг — dict CrawlSettings.http:
  {"rate_limit": {"kind": "token_bucket"|"none", "rate_per_sec": 2, "capacity": 4,
                  "min_delay_ms": 0, "jitter_ms": 0, "scope": "host"|"global"},
   "retries": {"max_attempts": 3, "base_delay": 0.5, "cap_delay": 8, "jitter": "full"|"none"},
   "diag_http": false}
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import requests


logger = logging.getLogger(__name__)

ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
TRANSIENT_STATUSES: tuple[int, ...] = (429, 500, 502, 503, 504)


class RateLimiter:
    """Сколько секунд подождать перед следующим запросом."""

    def acquire(self) -> float:
        raise NotImplementedError


@dataclass
class TokenBucket(RateLimiter):
    rate_per_sec: float
    capacity: float = 1.0
    tokens: float = -1.0
    stamp: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.tokens < 0:
            self.tokens = float(self.capacity)

    def acquire(self) -> float:
        with self._lock:
            now = time.monotonic()
            refill = (now - self.stamp) * self.rate_per_sec
            self.stamp = now
            self.tokens = min(float(self.capacity), self.tokens + max(0.0, refill))
            self.tokens -= 1.0
            if self.tokens >= 0.0:
                return 0.0
            # долг в токенах отрабатываем ожиданием
            debt = -self.tokens
            self.tokens = 0.0
            return debt / max(self.rate_per_sec, 1e-9)


@dataclass
class MinDelayWrapper(RateLimiter):
    """Не чаще одного запроса в min_delay секунд (+ случайные 0..jitter)."""

    inner: RateLimiter
    min_delay: float = 0.0
    jitter: float = 0.0
    _not_before: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def acquire(self) -> float:
        wait = float(self.inner.acquire())
        with self._lock:
            now = time.monotonic()
            wait = max(wait, self._not_before - now)
            if self.jitter > 0:
                wait += random.uniform(0.0, self.jitter)
            self._not_before = now + wait + self.min_delay
        return wait


class _Unlimited(RateLimiter):
    def acquire(self) -> float:
        return 0.0


def limiter_from_cfg(cfg: Optional[dict[str, Any]]) -> RateLimiter:
    cfg = cfg if isinstance(cfg, dict) else {}
    kind = str(cfg.get("kind") or "token_bucket").lower()
    inner: RateLimiter
    if kind in ("none", "off"):
        inner = _Unlimited()
    else:
        inner = TokenBucket(
            rate_per_sec=float(cfg.get("rate_per_sec") or 2.0),
            capacity=float(cfg.get("capacity") or 4.0),
        )
    min_delay = float(cfg.get("min_delay_ms") or 0) / 1000.0
    jitter = float(cfg.get("jitter_ms") or 0) / 1000.0
    if min_delay > 0 or jitter > 0:
        return MinDelayWrapper(inner=inner, min_delay=min_delay, jitter=jitter)
    return inner


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    cap_delay: float = 8.0
    jitter: str = "full"  # none | full
    retry_statuses: tuple[int, ...] = TRANSIENT_STATUSES

    @classmethod
    def from_cfg(cls, cfg: Any) -> "RetryPolicy":
        if not isinstance(cfg, dict):
            return cls()
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", 3))),
            base_delay=float(cfg.get("base_delay", 0.5)),
            cap_delay=float(cfg.get("cap_delay", 8.0)),
            jitter=str(cfg.get("jitter") or "full"),
            retry_statuses=tuple(int(s) for s in (cfg.get("retry_statuses") or TRANSIENT_STATUSES)),
        )

    def backoff(self, attempt: int, resp: Optional[requests.Response] = None) -> float:
        if resp is not None:
            ra = retry_after_seconds(resp.headers.get("Retry-After"))
            if ra is not None:
                return min(ra, self.cap_delay)
        delay = min(self.cap_delay, self.base_delay * (2 ** (attempt - 1)))
        return random.uniform(0.0, delay) if self.jitter == "full" else delay


def retry_after_seconds(value: Optional[str]) -> Optional[float]:
    value = (value or "").strip()
    if not value:
        return None
    if value.isdigit():
        return float(value) or None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    left = (when - datetime.now(timezone.utc)).total_seconds()
    return left if left > 0 else None


class HttpEngine:
    def __init__(
        self,
        *,
        default_timeout: float = 15.0,
        default_headers: Optional[dict[str, str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limit: Optional[dict[str, Any]] = None,
        diag_http: bool = False,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.default_timeout = float(default_timeout)
        self.default_headers = {"Accept": ACCEPT_HTML, **(default_headers or {})}
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limit = dict(rate_limit or {})
        self.diag_http = bool(diag_http)
        self.session = session or requests.Session()
        self._sleep = sleep
        self._limiters: dict[str, RateLimiter] = {}

    def limiter_for(self, url: str) -> RateLimiter:
        host = urlsplit(url).netloc.lower()
        key = "*" if str(self.rate_limit.get("scope") or "host") == "global" else host
        if key not in self._limiters:
            self._limiters[key] = limiter_from_cfg(self.rate_limit)
        return self._limiters[key]

    def _pause(self, sec: float) -> None:
        if sec > 0:
            self._sleep(sec)

    def _once(self, url: str, method: str, headers: dict[str, str], timeout: float):
        try:
            resp = self.session.request(method=method, url=url, headers=headers,
                                        timeout=timeout, allow_redirects=True)
        except requests.Timeout:
            return None, "timeout"
        except requests.ConnectionError as e:
            return None, f"connection_error:{type(e).__name__}"
        except requests.RequestException as e:
            return None, f"network_error:{type(e).__name__}"
        if resp.status_code >= 400:
            return resp, f"http_{resp.status_code}"
        return resp, None

    def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[requests.Response], Optional[str], int]:
        pol = self.retry_policy
        limiter = self.limiter_for(url)
        hdrs = {**self.default_headers, **(headers or {})}
        t_all = time.monotonic()
        resp: Optional[requests.Response] = None
        err: Optional[str] = None

        for attempt in range(1, pol.max_attempts + 1):
            self._pause(limiter.acquire())
            t0 = time.monotonic()
            resp, err = self._once(url, method, hdrs, float(timeout or self.default_timeout))
            if err is None:
                return resp, None, int((time.monotonic() - t0) * 1000)

            status = resp.status_code if resp is not None else None
            if self.diag_http:
                logger.info("http %s %s status=%s err=%s try=%d/%d", method, url, status, err,
                            attempt, pol.max_attempts)
            # 404/403 и прочие не-transient статусы отдаём сразу
            retryable = resp is None or status in pol.retry_statuses
            if not retryable or attempt == pol.max_attempts:
                break
            self._pause(pol.backoff(attempt, resp))

        return resp, err, int((time.monotonic() - t_all) * 1000)


def make_http_engine_from_cfg(
    http_cfg: Optional[dict[str, Any]],
    *,
    default_timeout: float = 15.0,
    user_agent: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> HttpEngine:
    cfg = http_cfg if isinstance(http_cfg, dict) else {}
    return HttpEngine(
        default_timeout=default_timeout,
        default_headers={"User-Agent": user_agent} if user_agent else None,
        retry_policy=RetryPolicy.from_cfg(cfg.get("retries")),
        rate_limit=cfg.get("rate_limit") if isinstance(cfg.get("rate_limit"), dict) else None,
        diag_http=bool(cfg.get("diag_http")),
        session=session,
    )
