from __future__ import annotations

import json

from listing_farm.cli import main
from listing_farm.drivers import FetchResult
from listing_farm.probe import build_profile


PLUGIN = '''
from listing_farm.extract import ExtractResult


def _empty(fetcher, profile, ctx):
    return []


STRATEGIES = {"sitemap": _empty, "html_links": _empty}


def extract(profile, page):
    return ExtractResult()
'''


def _out(capsys):
    return json.loads(capsys.readouterr().out)


def _add_source(db, capsys, *extra):
    assert main(["--db", db, "add-source", "--customer", "c1", "--base-url", "https://dealer.se", *extra]) == 0
    return _out(capsys)["id"]


def test_init_db_and_add_source(tmp_path, capsys):
    db = str(tmp_path / "farm.db")
    assert main(["--db", db, "init-db"]) == 0
    assert _out(capsys)["ok"] is True

    sid = _add_source(db, capsys, "--id", "ds-1")
    assert sid == "ds-1"

    assert main(["--db", db, "show-profile", "--source", "ds-1"]) == 0
    shown = _out(capsys)
    assert shown["usable"] is False
    assert shown["config"] is None


def test_probe_and_run_with_plugin(tmp_path, capsys, monkeypatch):
    (tmp_path / "farm_cli_plugin.py").write_text(PLUGIN, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    db = str(tmp_path / "farm.db")
    sid = _add_source(db, capsys)

    rc = main(["--db", db, "--plugin", "farm_cli_plugin", "probe", "--source", sid])
    probe = _out(capsys)
    assert rc == 0
    assert probe["outcome"] == "ack"
    assert probe["profile"]["discovery"]["strategy"] == "unknown"

    # strategy "unknown" -> production отказывается работать
    rc = main(["--db", db, "--plugin", "farm_cli_plugin", "run", "--source", sid])
    run = _out(capsys)
    assert rc == 1
    assert run["dead_letter_reason"] == "Site profile missing; run probe first"
    assert run["run"]["error_code"] == "PROFILE_MISSING"


def test_run_with_stored_profile(tmp_path, capsys, monkeypatch):
    (tmp_path / "farm_cli_plugin.py").write_text(PLUGIN, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    profile = build_profile("https://dealer.se", strategy="sitemap", confidence=0.9, notes=[], detail_url_patterns=[])
    path = tmp_path / "profile.json"
    path.write_text(json.dumps(profile.to_dict()), encoding="utf-8")
    events = tmp_path / "events.jsonl"

    db = str(tmp_path / "farm.db")
    sid = _add_source(db, capsys, "--profile", str(path))

    rc = main([
        "--db", db, "--plugin", "farm_cli_plugin", "--events-jsonl", str(events),
        "run", "--source", sid, "--run-id", "run-1",
    ])
    out = _out(capsys)
    assert rc == 0
    assert out["run"]["status"] == "success"
    assert out["summary"]["removalsSkipped"] is True

    codes = [json.loads(x)["event_code"] for x in events.read_text(encoding="utf-8").splitlines()]
    assert codes[0] == "DISCOVERY_START"
    assert "REMOVALS_SKIPPED" in codes
    assert codes[-1] == "SCRAPE_PROD_SUCCESS"

    assert main(["--db", db, "events", "--run-id", "run-1"]) == 0
    assert [e["event_code"] for e in _out(capsys)] == codes

    assert main(["--db", db, "runs", "--source", sid]) == 0
    assert [r["id"] for r in _out(capsys)] == ["run-1"]

    assert main(["--db", db, "items", "--source", sid, "--active"]) == 0
    assert _out(capsys) == []


def test_unknown_source_and_bad_plugin(tmp_path, capsys):
    db = str(tmp_path / "farm.db")
    assert main(["--db", db, "show-profile", "--source", "nope"]) == 2
    assert "Data source not found" in capsys.readouterr().err

    assert main(["--db", db, "--plugin", "no_such_plugin_module", "run", "--source", "nope"]) == 2
    assert "Cannot import plugin" in capsys.readouterr().err


PLUGIN_NO_EXTRACTOR = '''
def _two(fetcher, profile, ctx):
    return ["https://dealer.se/bil/a-1", "https://dealer.se/bil/b-2"]


STRATEGIES = {"sitemap": _two}
'''


class _StaticFetcher:
    def fetch(self, url, *, timeout_ms=None):
        return FetchResult(final_url=url, status=200, body="<html>bil</html>")


def test_run_without_extractor_leaves_items_for_retry(tmp_path, capsys, monkeypatch):
    (tmp_path / "farm_cli_noext.py").write_text(PLUGIN_NO_EXTRACTOR, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.setattr("listing_farm.prod_run.get_fetcher", lambda profile, settings: _StaticFetcher())
    profile = build_profile("https://dealer.se", strategy="sitemap", confidence=0.9, notes=[], detail_url_patterns=[])
    path = tmp_path / "profile.json"
    path.write_text(json.dumps(profile.to_dict()), encoding="utf-8")

    db = str(tmp_path / "farm.db")
    sid = _add_source(db, capsys, "--profile", str(path))

    rc = main(["--db", db, "--plugin", "farm_cli_noext", "run", "--source", sid])
    out = _out(capsys)
    assert rc == 0
    assert out["summary"]["discoveredCount"] == 2
    assert out["summary"]["failedCount"] == 2
    assert out["summary"]["fetchedCount"] == 0

    assert main(["--db", db, "items", "--source", sid]) == 0
    items = _out(capsys)
    assert len(items) == 2
    assert all(i["detail_fetched_at"] is None and i["content_hash"] is None for i in items)


def test_run_without_plugin_fails_instead_of_empty_success(tmp_path, capsys):
    profile = build_profile("https://dealer.se", strategy="sitemap", confidence=0.9, notes=[], detail_url_patterns=[])
    path = tmp_path / "profile.json"
    path.write_text(json.dumps(profile.to_dict()), encoding="utf-8")
    db = str(tmp_path / "farm.db")
    sid = _add_source(db, capsys, "--profile", str(path))

    assert main(["--db", db, "run", "--source", sid]) == 1
    out = _out(capsys)
    assert out["run"]["status"] == "failed"
    assert out["run"]["error_code"] == "STRATEGY_NOT_REGISTERED"
