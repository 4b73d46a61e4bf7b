from __future__ import annotations

"""
probe.py — каскад стратегий discovery: какую стратегию сайт поддерживает и насколько мы уверены.

Что делает probe (один раз / по запросу):
- по очереди пробует стратегии STRATEGY_ORDER (дешёвые раньше дорогих);
- каждую стратегию валидирует: хотя бы одна из первых 8 найденных ссылок
  должна скачаться и выглядеть как карточка (title или картинка);
- выбирает победителя, считает confidence + подсказки оператору;
- на образцах карточек учит detail-паттерн и вертикаль;
- сохраняет итоговый SiteProfile в data_sources.config_json.

Правило выбора:
- побеждает ПОСЛЕДНЯЯ валидированная стратегия;
- валидированная стратегия с >= 20 items останавливает каскад;
- если валидированных нет — берём самую “урожайную” (при равенстве — более раннюю);
- ноль items везде -> strategy "unknown" (это валидный итог, не ошибка).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .discovery import STRATEGY_ORDER, DiscoveredItem, StrategyDiscoverer, StrategyRegistry
from .drivers import FetchResult, Fetcher, make_headless_fetcher, make_http_fetcher
from .errors import SCRAPE_CRASH, DataSourceNotFound, RunStateError
from .events import EventEmitter, EventSink
from .extract import Extractor
from .jobs import Job, JobHandle, validate_correlation
from .keying import is_likely_detail_url
from .pattern_learn import MATCH_ALL, learn_detail_url_pattern, pick_pattern_samples
from .settings import CrawlSettings, settings_from_env
from .site_profile import (
    DEFAULT_HEADLESS_TIMEOUT_MS,
    DEFAULT_HTTP_TIMEOUT_MS,
    PROFILE_VERSION,
    DiscoverySpec,
    ExtractSpec,
    FetchSpec,
    HeadlessFetchSpec,
    HttpFetchSpec,
    Limits,
    ProbeInfo,
    SiteProfile,
    build_trial_profile,
)
from .storage_sqlite import CrawlStore
from .vertical import classify_vertical


logger = logging.getLogger(__name__)

JOB_TYPE = "source_probe"

MIN_ITEMS_STRONG = 20
MIN_ITEMS_WEAK = 3
SAMPLE_VALIDATE_COUNT = 8
SAMPLE_VALIDATE_TIMEOUT_MS = 10000
SAMPLE_DETAIL_COUNT = 3
DETAIL_CANDIDATE_LIMIT = 20

NOTE_UNKNOWN = "No detail-like items discovered; add sitemapUrls/seedUrls or enable headless discovery."
NOTE_HEADLESS = "Headless listing selected by probe for dynamic inventory discovery."


@dataclass
class ProbeAttempt:
    strategy: str
    found_count: int = 0
    validated: bool = False
    error: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"strategy": self.strategy, "foundCount": self.found_count, "validated": self.validated}
        if self.error:
            d["error"] = self.error
        if self.note:
            d["note"] = self.note
        return d


@dataclass
class CascadeResult:
    strategy: str
    items: list[DiscoveredItem] = field(default_factory=list)
    attempts: list[ProbeAttempt] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def found_count(self) -> int:
        return len(self.items)


@dataclass
class DetailSample:
    vertical: str = "generic"
    valid_urls: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=lambda: [MATCH_ALL])


@dataclass
class ProbeOutcome:
    profile: SiteProfile
    cascade: CascadeResult
    sample: DetailSample


def score_confidence(strategy: str, found_count: int) -> tuple[float, list[str]]:
    """Пороговая оценка уверенности + подсказки оператору."""
    notes: list[str] = []
    if strategy == "unknown":
        confidence = 0.1
        notes.append(NOTE_UNKNOWN)
    elif found_count >= MIN_ITEMS_STRONG:
        confidence = 0.9
    elif found_count >= MIN_ITEMS_WEAK:
        confidence = 0.5
        notes.append(f"Only {found_count} items discovered; consider adding seedUrls or enabling headless discovery.")
    elif found_count > 0:
        confidence = 0.1
        notes.append(
            f"Only {found_count} items discovered; consider adding sitemapUrls/seedUrls or enabling headless."
        )
    else:
        confidence = 0.1
    if strategy == "headless_listing":
        notes.append(NOTE_HEADLESS)
    return confidence, notes


def build_profile(
    base_url: str,
    *,
    strategy: str,
    confidence: float,
    notes: Sequence[str],
    detail_url_patterns: Sequence[str],
    vertical: str = "generic",
    tested_at: Optional[str] = None,
) -> SiteProfile:
    return SiteProfile(
        profile_version=PROFILE_VERSION,
        probe=ProbeInfo(
            tested_at=tested_at or datetime.now(timezone.utc).isoformat(),
            confidence=confidence,
            notes=list(notes),
        ),
        discovery=DiscoverySpec(
            strategy=strategy,
            seed_urls=[base_url] if strategy in ("html_links", "endpoint_sniff") else [],
            sitemap_urls=[],
            detail_url_patterns=list(detail_url_patterns) or [MATCH_ALL],
        ),
        fetch=FetchSpec(
            driver="http",
            http=HttpFetchSpec(timeout_ms=DEFAULT_HTTP_TIMEOUT_MS),
            headless=HeadlessFetchSpec(
                enabled=(strategy == "headless_listing"),
                timeout_ms=DEFAULT_HEADLESS_TIMEOUT_MS,
            ),
        ),
        extract=ExtractSpec(vertical=vertical, strategy="dom"),
        limits=Limits(),
    )


class ProbeCascade:
    """
    Чистая логика probe без БД: каскад + оценка + образцы карточек.

    on_fetched(url, result) вызывается после каждого успешного sample fetch
    (SourceProbe вешает туда событие HTML_TRUNCATED_FOR_PARSE).
    """

    def __init__(
        self,
        discoverer: StrategyDiscoverer,
        extractor: Extractor,
        http_fetcher: Fetcher,
        *,
        headless_fetcher: Optional[Fetcher] = None,
        order: Sequence[str] = STRATEGY_ORDER,
        on_fetched: Optional[Callable[[str, FetchResult], None]] = None,
    ) -> None:
        self.discoverer = discoverer
        self.extractor = extractor
        self.http_fetcher = http_fetcher
        self.headless_fetcher = headless_fetcher
        self.order = tuple(order)
        self.on_fetched = on_fetched

    def _fetch_detail_like(self, profile: SiteProfile, url: str, timeout_ms: int) -> Optional[Any]:
        """Скачать и извлечь; None если страница не годится как карточка."""
        res = self.http_fetcher.fetch(url, timeout_ms=timeout_ms)
        if res.status != 200 or not res.body:
            return None
        if self.on_fetched is not None:
            self.on_fetched(url, res)
        extracted = self.extractor.extract(profile, res)
        return extracted if extracted.looks_like_detail() else None

    def validate(self, profile: SiteProfile, items: Sequence[DiscoveredItem]) -> bool:
        for it in items[:SAMPLE_VALIDATE_COUNT]:
            try:
                if self._fetch_detail_like(profile, it.url, SAMPLE_VALIDATE_TIMEOUT_MS) is not None:
                    return True
            except Exception as e:
                logger.debug("sample validation failed url=%s err=%s", it.url, e)
        return False

    def run(self, base_url: str) -> CascadeResult:
        attempts: list[ProbeAttempt] = []
        fallback: Optional[tuple[str, list[DiscoveredItem], dict[str, Any]]] = None
        winner: Optional[tuple[str, list[DiscoveredItem], dict[str, Any]]] = None

        for name in self.order:
            if name not in self.discoverer.registry:
                attempts.append(ProbeAttempt(strategy=name, note="not_registered"))
                continue

            trial = build_trial_profile(base_url, name)
            try:
                res = self.discoverer.run_strategy(
                    name, trial, base_url, self.http_fetcher, headless_fetcher=self.headless_fetcher,
                )
            except Exception as e:
                logger.warning("probe strategy %s failed for %s: %s", name, base_url, e)
                attempts.append(ProbeAttempt(strategy=name, error=f"{type(e).__name__}: {e}"))
                continue

            n = len(res.items)
            if fallback is None or n > len(fallback[1]):
                fallback = (name, res.items, res.meta)

            validated = n > 0 and self.validate(trial, res.items)
            attempts.append(ProbeAttempt(strategy=name, found_count=n, validated=validated))
            if validated:
                winner = (name, res.items, res.meta)
                if n >= MIN_ITEMS_STRONG:
                    break

        chosen = winner
        if chosen is None and fallback is not None and fallback[1]:
            chosen = fallback
        if chosen is None:
            return CascadeResult(strategy="unknown", attempts=attempts)
        return CascadeResult(strategy=chosen[0], items=list(chosen[1]), attempts=attempts, meta=dict(chosen[2]))

    def sample_details(self, base_url: str, strategy: str, items: Sequence[DiscoveredItem]) -> DetailSample:
        urls = [i.url for i in items]
        likely = [u for u in urls if is_likely_detail_url(u)]
        candidates = (likely or urls)[:DETAIL_CANDIDATE_LIMIT]

        profile = build_trial_profile(base_url, strategy)
        sample = DetailSample()
        for url in candidates:
            try:
                extracted = self._fetch_detail_like(profile, url, DEFAULT_HTTP_TIMEOUT_MS)
            except Exception as e:
                logger.debug("detail sample failed url=%s err=%s", url, e)
                continue
            if extracted is None:
                continue
            sample.vertical = classify_vertical(extracted.attributes)
            sample.valid_urls.append(url)
            if len(sample.valid_urls) >= SAMPLE_DETAIL_COUNT:
                break

        if sample.valid_urls:
            sample.patterns = learn_detail_url_pattern(sample.valid_urls)
        elif likely:
            sample.patterns = learn_detail_url_pattern(pick_pattern_samples(likely, limit=SAMPLE_DETAIL_COUNT))
        return sample

    def probe(self, base_url: str) -> ProbeOutcome:
        cascade = self.run(base_url)
        confidence, notes = score_confidence(cascade.strategy, cascade.found_count)
        sample = self.sample_details(base_url, cascade.strategy, cascade.items)
        profile = build_profile(
            base_url,
            strategy=cascade.strategy,
            confidence=confidence,
            notes=notes,
            detail_url_patterns=sample.patterns,
            vertical=sample.vertical,
        )
        return ProbeOutcome(profile=profile, cascade=cascade, sample=sample)


def truncation_reporter(ev: EventEmitter, max_bytes: int) -> Callable[[str, FetchResult], None]:
    """Колбэк: событие HTML_TRUNCATED_FOR_PARSE на каждую обрезанную страницу."""
    def _report(url: str, res: FetchResult) -> None:
        tr = res.trace
        if tr is None or not tr.html_truncated:
            return
        ev.warn(
            "HTML_TRUNCATED_FOR_PARSE",
            "HTML truncated for parsing",
            stage="extract",
            meta={
                "maxBytes": max_bytes,
                "originalBytes": tr.original_bytes,
                "truncatedBytes": tr.truncated_bytes,
                "url": url,
            },
        )
    return _report


class SourceProbe:
    """Job runner probe: прогон (scrape_runs), события, сохранение профиля, ack/dead-letter."""

    def __init__(
        self,
        store: CrawlStore,
        *,
        registry: StrategyRegistry,
        extractor: Extractor,
        settings: Optional[CrawlSettings] = None,
        sink: Optional[EventSink] = None,
        http_fetcher: Optional[Fetcher] = None,
        headless_fetcher: Optional[Fetcher] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.extractor = extractor
        self.settings = settings or settings_from_env()
        self.sink = sink
        self.http_fetcher = http_fetcher or make_http_fetcher(self.settings, timeout_ms=DEFAULT_HTTP_TIMEOUT_MS)
        self.headless_fetcher = headless_fetcher or make_headless_fetcher(self.settings)

    def process(self, job: Job, handle: JobHandle) -> Optional[str]:
        chk = validate_correlation(job.correlation, job.payload)
        if not chk.ok or chk.correlation is None:
            logger.warning("probe job %s rejected: %s", job.job_id, chk.reason)
            handle.dead_letter(chk.reason or "MISSING_CORRELATION")
            return None
        corr = chk.correlation

        try:
            run_id = self.store.create_run(
                customer_id=corr.customer_id,
                data_source_id=corr.data_source_id,
                run_type="probe",
                job_id=job.job_id,
                run_id=corr.run_id,
            )
            self.store.mark_run_running(run_id, job_id=job.job_id)
        except RunStateError as e:
            logger.warning("probe job %s: %s", job.job_id, e)
            handle.dead_letter(str(e))
            return None

        ev = EventEmitter(
            self.sink,
            customer_id=corr.customer_id,
            job_type=JOB_TYPE,
            job_id=job.job_id,
            run_id=run_id,
            data_source_id=corr.data_source_id,
        )
        ev.info("SYSTEM_JOB_START", "Job started", stage="start", meta={"jobType": JOB_TYPE})

        try:
            ds = self.store.get_data_source(corr.data_source_id)
            if ds is None or ds.customer_id != corr.customer_id:
                raise DataSourceNotFound(corr.data_source_id)

            ev.info("PROBE_START", "Probe started", stage="probe", meta={"baseUrl": ds.base_url})
            cascade = ProbeCascade(
                StrategyDiscoverer(self.registry),
                self.extractor,
                self.http_fetcher,
                headless_fetcher=self.headless_fetcher,
                on_fetched=truncation_reporter(ev, self.settings.max_html_bytes),
            )
            outcome = cascade.probe(ds.base_url)
            strategy = outcome.cascade.strategy

            ev.info(
                "PROBE_STRATEGY_SELECTED",
                f"Discovery strategy selected: {strategy}",
                stage="probe",
                meta={
                    "strategy": strategy,
                    "discoveredCount": outcome.cascade.found_count,
                    "attempts": [a.to_dict() for a in outcome.cascade.attempts],
                },
            )
            if strategy == "headless_listing":
                ev.info(
                    "HEADLESS_USED",
                    "Headless driver selected for listing discovery",
                    stage="probe",
                    meta={"provider": self.settings.headless_provider, "mode": "listing", "reason": "probe_strategy"},
                )

            self.store.save_profile_config(ds.id, outcome.profile.to_dict())
            self.store.finish_run_success(run_id, items_seen=outcome.cascade.found_count)
            meta = dict(outcome.cascade.meta)
            meta.update({
                "jobType": JOB_TYPE,
                "confidence": outcome.profile.probe.confidence,
                "strategy": strategy,
                "foundCount": outcome.cascade.found_count,
                "notes": outcome.profile.probe.notes,
            })
            ev.info("SYSTEM_JOB_SUCCESS", "Job completed", stage="finalize", meta=meta)
            handle.ack()
        except DataSourceNotFound as e:
            self.store.finish_run_failed(run_id, error_code=e.code, error_message=str(e))
            ev.error("SYSTEM_JOB_FAIL", str(e), stage="finalize", meta={"errorCode": e.code})
            handle.dead_letter(str(e))
        except Exception as e:
            logger.exception("probe job %s crashed (run=%s)", job.job_id, run_id)
            self.store.finish_run_failed(run_id, error_code=SCRAPE_CRASH, error_message=str(e))
            ev.error("SYSTEM_JOB_FAIL", str(e), stage="finalize", meta={"errorCode": SCRAPE_CRASH})
            handle.dead_letter(str(e))
        return run_id
