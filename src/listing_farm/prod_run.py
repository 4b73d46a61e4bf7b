from __future__ import annotations

"""
prod_run.py — инкрементальный production-прогон по готовому профилю.

Принцип:
- Никакой магии: прогон не угадывает стратегию, он выполняет техкарту (SiteProfile).
  Нет профиля (или strategy "unknown") -> PROFILE_MISSING, "run probe first".

Порядок внутри прогона (строго последовательно):
  discovery -> upsert seen -> removal guard -> removals -> выбор новых -> detail fetch -> finalize

Removal guard: если discovery вернул 0 или меньше порога — удаления НЕ делаем
(пустой/обрезанный discovery почти всегда сбой сайта/сети, а не распродажа всего склада).

Detail fetch: последовательно, с паузой между карточками; ошибка одной карточки
не валит прогон — считаем failed, пишем событие, карточка остаётся без detail
и будет кандидатом в следующем прогоне.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .content_hash import hash_extracted
from .discovery import StrategyDiscoverer, StrategyRegistry
from .drivers import Fetcher, get_fetcher, make_headless_fetcher
from .errors import DataSourceNotFound, ProfileMissing, RunStateError, map_error_to_event_code
from .events import EventEmitter, EventSink
from .extract import Extractor
from .jobs import Job, JobHandle, validate_correlation
from .probe import truncation_reporter
from .settings import CrawlSettings, settings_from_env
from .site_profile import DEFAULT_LIMITS, SiteProfile, resolve_profile
from .storage_sqlite import CrawlStore


logger = logging.getLogger(__name__)

JOB_TYPE = "scrape_prod"
DETAIL_CONCURRENCY = DEFAULT_LIMITS["concurrency"]


def should_run_removals(discovered_count: int, threshold: int) -> bool:
    """False при пустом discovery или если найдено меньше порога (порог < 1 считается 1)."""
    if discovered_count <= 0:
        return False
    return discovered_count >= max(1, int(threshold))


@dataclass
class RunSummary:
    run_id: str
    discovered: int = 0
    new_count: int = 0
    total_new: int = 0
    skipped: int = 0
    fetched: int = 0
    failed: int = 0
    removed: int = 0
    removals_skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "discoveredCount": self.discovered,
            "newCount": self.new_count,
            "totalNew": self.total_new,
            "skippedCount": self.skipped,
            "fetchedCount": self.fetched,
            "failedCount": self.failed,
            "removedCount": self.removed,
            "removalsSkipped": self.removals_skipped,
        }


class ProductionRun:
    """
    Job runner production-прогона.

    fetcher / headless_fetcher можно подменить (тесты, CLI); иначе строятся
    по профилю из settings на каждый job. sleep — для паузы между detail fetch.
    """

    def __init__(
        self,
        store: CrawlStore,
        *,
        registry: StrategyRegistry,
        extractor: Extractor,
        settings: Optional[CrawlSettings] = None,
        sink: Optional[EventSink] = None,
        fetcher: Optional[Fetcher] = None,
        headless_fetcher: Optional[Fetcher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.discoverer = StrategyDiscoverer(registry)
        self.extractor = extractor
        self.settings = settings or settings_from_env()
        self.sink = sink
        self.fetcher = fetcher
        self.headless_fetcher = headless_fetcher
        self.sleep = sleep
        self.last_summary: Optional[RunSummary] = None

    # -----------------
    # knobs
    # -----------------

    def max_new_per_run(self, profile: SiteProfile) -> int:
        if self.settings.max_new_per_run is not None:
            return self.settings.max_new_per_run
        return profile.limits.max_new_per_run or DEFAULT_LIMITS["maxNewPerRun"]

    def fetch_delay_ms(self, profile: SiteProfile) -> int:
        if self.settings.fetch_delay_ms is not None:
            return self.settings.fetch_delay_ms
        return max(0, profile.limits.politeness_delay_ms or 0)

    def removal_threshold(self, profile: SiteProfile) -> int:
        if profile.limits.removal_threshold is not None:
            return max(1, profile.limits.removal_threshold)
        return max(1, self.settings.removal_threshold)

    # -----------------
    # job
    # -----------------

    def process(self, job: Job, handle: JobHandle) -> Optional[str]:
        chk = validate_correlation(job.correlation, job.payload)
        if not chk.ok or chk.correlation is None:
            logger.warning("prod job %s rejected: %s", job.job_id, chk.reason)
            handle.dead_letter(chk.reason or "MISSING_CORRELATION")
            return None
        corr = chk.correlation

        try:
            run_id = self.store.create_run(
                customer_id=corr.customer_id,
                data_source_id=corr.data_source_id,
                run_type="prod",
                job_id=job.job_id,
                run_id=corr.run_id,
            )
            self.store.mark_run_running(run_id, job_id=job.job_id)
        except RunStateError as e:
            logger.warning("prod job %s: %s", job.job_id, e)
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

        ds = self.store.get_data_source(corr.data_source_id)
        if ds is None or ds.customer_id != corr.customer_id:
            err = DataSourceNotFound(corr.data_source_id)
            self.store.finish_run_failed(run_id, error_code=err.code, error_message=str(err))
            ev.error("SCRAPE_PROD_FAIL", "Data source not found", stage="load_data_source", meta={"errorCode": err.code})
            handle.dead_letter(str(err))
            return run_id

        profile = resolve_profile(ds.config)
        if profile is None:
            err2 = ProfileMissing()
            self.store.finish_run_failed(run_id, error_code=err2.code, error_message=str(err2))
            ev.warn("PROFILE_MISSING", "Site profile missing; run probe first", stage="probe")
            handle.dead_letter("Site profile missing; run probe first")
            return run_id

        try:
            summary = self._run(run_id, corr.customer_id, ds.id, ds.base_url, profile, ev)
            self.store.finish_run_success(
                run_id,
                items_seen=summary.discovered,
                items_new=summary.new_count,
                items_removed=summary.removed,
                items_failed=summary.failed,
            )
            self.last_summary = summary
            meta = summary.to_dict()
            meta["jobType"] = JOB_TYPE
            ev.info("SCRAPE_PROD_SUCCESS", "SCRAPE_PROD completed", stage="finalize", meta=meta)
            handle.ack()
        except Exception as e:
            code = map_error_to_event_code(e)
            logger.exception("prod job %s failed (run=%s, code=%s)", job.job_id, run_id, code)
            self.store.finish_run_failed(run_id, error_code=code, error_message=str(e))
            ev.error("SCRAPE_PROD_FAIL", str(e), stage="finalize", meta={"errorCode": code})
            handle.dead_letter(str(e))
        return run_id

    def _run(
        self,
        run_id: str,
        customer_id: str,
        data_source_id: str,
        base_url: str,
        profile: SiteProfile,
        ev: EventEmitter,
    ) -> RunSummary:
        fetcher = self.fetcher or get_fetcher(profile, self.settings)
        headless = self.headless_fetcher or make_headless_fetcher(self.settings, profile)
        summary = RunSummary(run_id=run_id)

        # 1) discovery
        ev.info("DISCOVERY_START", "Discovery started", stage="discovery")
        found = self.discoverer.discover(
            profile,
            base_url,
            fetcher,
            headless_fetcher=headless,
            simulate_removals_fraction=self.settings.simulate_removals_fraction,
        )
        summary.discovered = len(found.items)
        done_meta = dict(found.meta)
        done_meta["discoveredCount"] = summary.discovered
        ev.info("DISCOVERY_DONE", "Discovery completed", stage="discovery", meta=done_meta)

        # 2) upsert seen
        upserted = self.store.upsert_seen(
            customer_id=customer_id, data_source_id=data_source_id, run_id=run_id, items=found.items,
        )
        ev.info(
            "DIFF_DONE",
            "Diff/upsert completed",
            stage="diff",
            meta={"discoveredCount": summary.discovered, "upsertedCount": upserted},
        )

        # 3) removal guard + removals
        threshold = self.removal_threshold(profile)
        if should_run_removals(summary.discovered, threshold):
            summary.removed = self.store.mark_removed(
                customer_id=customer_id, data_source_id=data_source_id, run_id=run_id,
            )
            ev.info("REMOVALS_DONE", "Removed items marked", stage="removals", meta={"removedCount": summary.removed})
        else:
            summary.removals_skipped = True
            ev.warn(
                "REMOVALS_SKIPPED",
                "Removal pass skipped: too few items discovered",
                stage="removals",
                meta={"discoveredCount": summary.discovered, "threshold": threshold},
            )

        # 4) выбор новых
        limit = self.max_new_per_run(profile)
        summary.total_new = self.store.count_detail_candidates(
            customer_id=customer_id, data_source_id=data_source_id, run_id=run_id,
        )
        candidates = self.store.select_detail_candidates(
            customer_id=customer_id, data_source_id=data_source_id, run_id=run_id, limit=limit,
        )
        summary.new_count = len(candidates)
        summary.skipped = max(0, summary.total_new - summary.new_count)
        ev.info(
            "DETAILS_START",
            "Detail fetch started",
            stage="details",
            meta={
                "newCount": summary.new_count,
                "totalNew": summary.total_new,
                "skippedCount": summary.skipped,
                "concurrency": DETAIL_CONCURRENCY,
            },
        )

        # 5) detail fetch
        delay_sec = self.fetch_delay_ms(profile) / 1000.0
        report_truncated = truncation_reporter(ev, self.settings.max_html_bytes)
        for idx, item in enumerate(candidates):
            if idx > 0 and delay_sec > 0:
                self.sleep(delay_sec)
            if self._fetch_detail(item, run_id, profile, fetcher, ev, report_truncated):
                summary.fetched += 1
            else:
                summary.failed += 1

        ev.info(
            "DETAILS_DONE",
            "Detail fetch completed",
            stage="details",
            meta={"fetchedCount": summary.fetched, "failedCount": summary.failed, "skippedCount": summary.skipped},
        )
        return summary

    def _fetch_detail(
        self,
        item: dict[str, Any],
        run_id: str,
        profile: SiteProfile,
        fetcher: Fetcher,
        ev: EventEmitter,
        report_truncated: Callable[..., None],
    ) -> bool:
        sid = item.get("source_item_id")
        url = item.get("url")
        if not url:
            ev.warn(
                "ITEM_DETAIL_FAIL", "Item detail fetch failed", stage="details",
                meta={"sourceItemId": sid, "reason": "missing url"},
            )
            return False
        try:
            res = fetcher.fetch(url, timeout_ms=profile.fetch.http.timeout_ms)
            if res.status != 200 or not res.body:
                ev.warn(
                    "ITEM_DETAIL_FAIL", "Item detail fetch failed", stage="details",
                    meta={"sourceItemId": sid, "reason": f"HTTP {res.status}"},
                )
                return False
            report_truncated(url, res)
            extracted = self.extractor.extract(profile, res)
            self.store.update_item_detail(
                item["id"],
                run_id=run_id,
                base_fields=extracted.base_fields,
                image_urls=extracted.image_urls,
                attributes=extracted.attributes,
                content_hash=hash_extracted(extracted),
            )
        except Exception as e:
            logger.info("detail fetch failed source_item_id=%s url=%s err=%s", sid, url, e)
            ev.warn(
                "ITEM_DETAIL_FAIL", "Item detail fetch failed", stage="details",
                meta={"sourceItemId": sid, "reason": str(e) or type(e).__name__},
            )
            return False

        ev.info(
            "ITEM_DETAIL_OK", "Item detail fetched", stage="details",
            meta={"sourceItemId": sid, "imageCount": len(extracted.image_urls)},
        )
        return True
