from __future__ import annotations

"""
cli.py — единая точка входа (CLI) краулера.

Философия:
- “Один пульт”: источники, probe, production-прогоны и просмотр состояния.
- Стратегии discovery и extractor подключаются плагином (--plugin pkg.module):
    STRATEGIES: dict[str, fn(fetcher, profile, ctx)]
    EXTRACTOR (объект с .extract) или extract(profile, page) (функция)
- Настройки — из ENV (settings_from_env) + --settings JSON поверх.

Команды:
- init-db      : создать схему
- add-source   : зарегистрировать источник (сайт клиента)
- probe        : каскад стратегий -> SiteProfile в config_json
- run          : production-прогон по профилю
- runs / items / events / show-profile : просмотр состояния
"""

import argparse
import importlib
import json
import logging
import sys
import uuid
from typing import Any, Optional

from .discovery import StrategyRegistry
from .errors import SCRAPE_PARSE_FAIL, CrawlError
from .events import EventSink, JsonlEventSink, LoggingEventSink, MultiSink
from .extract import ExtractResult, Extractor, FunctionExtractor
from .jobs import Job, RecordingJobHandle
from .probe import SourceProbe
from .prod_run import ProductionRun
from .settings import CrawlSettings, settings_from_cfg, settings_from_env
from .site_profile import resolve_profile
from .storage_sqlite import CrawlStore, SqliteEventSink


logger = logging.getLogger(__name__)


class CliError(Exception):
    def __init__(self, message: str, *, exit_code: int = 2) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class _NullExtractor:
    """Без плагина извлекать нечего: каждая карточка считается неудачной и остаётся кандидатом."""

    def extract(self, profile: Any, page: Any) -> ExtractResult:
        raise CrawlError("No extractor configured (plugin needs EXTRACTOR or extract)", code=SCRAPE_PARSE_FAIL)


# ----------------------------
# Утилиты
# ----------------------------

def _pretty(obj: Any, pretty: bool) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=(2 if pretty else None), default=str)


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _load_plugin(name: Optional[str]) -> tuple[StrategyRegistry, Extractor]:
    if not name:
        logger.warning("no --plugin given: no discovery strategies and no extractor")
        return StrategyRegistry(), _NullExtractor()
    try:
        mod = importlib.import_module(name)
    except ImportError as e:
        raise CliError(f"Cannot import plugin module {name!r}: {e}") from e

    strategies = getattr(mod, "STRATEGIES", None) or {}
    if not isinstance(strategies, dict):
        raise CliError(f"Plugin {name!r}: STRATEGIES must be a dict name -> fn")
    try:
        registry = StrategyRegistry(strategies)
    except ValueError as e:
        raise CliError(f"Plugin {name!r}: {e}") from e

    extractor: Extractor
    if getattr(mod, "EXTRACTOR", None) is not None:
        extractor = mod.EXTRACTOR
    elif callable(getattr(mod, "extract", None)):
        extractor = FunctionExtractor(mod.extract)
    else:
        logger.warning("plugin %s has no EXTRACTOR/extract; detail fetches will fail", name)
        extractor = _NullExtractor()
    return registry, extractor


def _settings(args: argparse.Namespace) -> CrawlSettings:
    base = settings_from_env()
    if getattr(args, "settings", None):
        cfg = _read_json(args.settings)
        if not isinstance(cfg, dict):
            raise CliError("Settings JSON must be an object")
        base = settings_from_cfg(cfg, base=base)
    if getattr(args, "diag_http", False):
        http = dict(base.http)
        http["diag_http"] = True
        base = settings_from_cfg({"http": http}, base=base)
    return base


def _sink(store: CrawlStore, args: argparse.Namespace) -> EventSink:
    sinks: list[EventSink] = [SqliteEventSink(store), LoggingEventSink()]
    if getattr(args, "events_jsonl", None):
        sinks.append(JsonlEventSink(args.events_jsonl))
    return MultiSink(sinks)


def _job(args: argparse.Namespace, store: CrawlStore) -> Job:
    ds = store.get_data_source(args.source)
    if ds is None:
        raise CliError(f"Data source not found: {args.source}")
    corr: dict[str, Any] = {"customerId": ds.customer_id, "dataSourceId": ds.id}
    if getattr(args, "run_id", None):
        corr["runId"] = args.run_id
    return Job(job_id=f"cli-{uuid.uuid4().hex[:12]}", payload={"dataSourceId": ds.id}, correlation=corr)


def _job_report(store: CrawlStore, run_id: Optional[str], handle: RecordingJobHandle) -> dict[str, Any]:
    return {
        "outcome": handle.outcome,
        "dead_letter_reason": handle.dead_letter_reason,
        "run": store.get_run(run_id) if run_id else None,
    }


# ----------------------------
# Команды
# ----------------------------

def cmd_init_db(args: argparse.Namespace) -> int:
    with CrawlStore(args.db):
        pass
    print(_pretty({"db": args.db, "ok": True}, args.pretty))
    return 0


def cmd_add_source(args: argparse.Namespace) -> int:
    config = _read_json(args.profile) if args.profile else None
    if config is not None and not isinstance(config, dict):
        raise CliError("Profile JSON must be an object")
    with CrawlStore(args.db) as store:
        sid = store.add_data_source(
            customer_id=args.customer,
            base_url=args.base_url,
            name=args.name,
            config=config,
            source_id=args.id,
        )
    print(_pretty({"id": sid, "customer_id": args.customer, "base_url": args.base_url}, args.pretty))
    return 0


def cmd_probe(args: argparse.Namespace) -> int:
    registry, extractor = _load_plugin(args.plugin)
    settings = _settings(args)
    with CrawlStore(args.db) as store:
        job = _job(args, store)
        handle = RecordingJobHandle()
        worker = SourceProbe(store, registry=registry, extractor=extractor, settings=settings, sink=_sink(store, args))
        run_id = worker.process(job, handle)
        out = _job_report(store, run_id, handle)
        ds = store.get_data_source(args.source)
        out["profile"] = ds.config if ds is not None else None
    print(_pretty(out, args.pretty))
    return 0 if handle.acked else 1


def cmd_run(args: argparse.Namespace) -> int:
    registry, extractor = _load_plugin(args.plugin)
    settings = _settings(args)
    with CrawlStore(args.db) as store:
        job = _job(args, store)
        handle = RecordingJobHandle()
        worker = ProductionRun(store, registry=registry, extractor=extractor, settings=settings, sink=_sink(store, args))
        run_id = worker.process(job, handle)
        out = _job_report(store, run_id, handle)
        if worker.last_summary is not None:
            out["summary"] = worker.last_summary.to_dict()
    print(_pretty(out, args.pretty))
    return 0 if handle.acked else 1


def cmd_runs(args: argparse.Namespace) -> int:
    with CrawlStore(args.db) as store:
        rows = store.list_runs(data_source_id=args.source, limit=args.limit)
    print(_pretty(rows, args.pretty))
    return 0


def cmd_items(args: argparse.Namespace) -> int:
    with CrawlStore(args.db) as store:
        rows = store.list_items(data_source_id=args.source, active_only=args.active, limit=args.limit)
    print(_pretty(rows, args.pretty))
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    with CrawlStore(args.db) as store:
        rows = store.list_run_events(run_id=args.run_id, limit=args.limit)
    print(_pretty(rows, args.pretty))
    return 0


def cmd_show_profile(args: argparse.Namespace) -> int:
    with CrawlStore(args.db) as store:
        ds = store.get_data_source(args.source)
    if ds is None:
        raise CliError(f"Data source not found: {args.source}")
    profile = resolve_profile(ds.config)
    print(_pretty({
        "id": ds.id,
        "base_url": ds.base_url,
        "usable": profile is not None,
        "config": ds.config,
    }, args.pretty))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="listing-farm")
    p.add_argument("--db", default="listing_farm.db", help="path to SQLite database")
    p.add_argument("--pretty", action="store_true", help="pretty JSON output")
    p.add_argument("--log-level", default="WARNING", help="logging level (DEBUG, INFO, WARNING, ...)")
    p.add_argument("--plugin", default=None, help="module with STRATEGIES and EXTRACTOR/extract")
    p.add_argument("--settings", default=None, help="JSON file with CrawlSettings overrides")
    p.add_argument("--events-jsonl", default=None, help="also append run events to this JSONL file")
    p.add_argument("--diag-http", action="store_true", help="log every failed HTTP attempt (INFO)")

    sub = p.add_subparsers(dest="cmd", required=True)

    i = sub.add_parser("init-db", help="create database schema")
    i.set_defaults(fn=cmd_init_db)

    a = sub.add_parser("add-source", help="register a customer website")
    a.add_argument("--customer", required=True)
    a.add_argument("--base-url", required=True)
    a.add_argument("--name", default=None)
    a.add_argument("--id", default=None, help="explicit data source id")
    a.add_argument("--profile", default=None, help="optional SiteProfile JSON to store as config")
    a.set_defaults(fn=cmd_add_source)

    pr = sub.add_parser("probe", help="run the discovery cascade and store the site profile")
    pr.add_argument("--source", required=True)
    pr.add_argument("--run-id", default=None)
    pr.set_defaults(fn=cmd_probe)

    r = sub.add_parser("run", help="incremental production run for one data source")
    r.add_argument("--source", required=True)
    r.add_argument("--run-id", default=None)
    r.set_defaults(fn=cmd_run)

    rs = sub.add_parser("runs", help="list runs")
    rs.add_argument("--source", default=None)
    rs.add_argument("--limit", type=int, default=20)
    rs.set_defaults(fn=cmd_runs)

    it = sub.add_parser("items", help="list items of a data source")
    it.add_argument("--source", required=True)
    it.add_argument("--active", action="store_true", help="only active items")
    it.add_argument("--limit", type=int, default=200)
    it.set_defaults(fn=cmd_items)

    ev = sub.add_parser("events", help="list run events")
    ev.add_argument("--run-id", default=None)
    ev.add_argument("--limit", type=int, default=200)
    ev.set_defaults(fn=cmd_events)

    sp = sub.add_parser("show-profile", help="print stored site profile")
    sp.add_argument("--source", required=True)
    sp.set_defaults(fn=cmd_show_profile)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return int(args.fn(args) or 0)
    except CliError as e:
        print(str(e), file=sys.stderr)
        return int(e.exit_code)


if __name__ == "__main__":
    raise SystemExit(main())
