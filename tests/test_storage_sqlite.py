from __future__ import annotations

import pytest

from listing_farm.errors import RunStateError
from listing_farm.events import RunEvent
from listing_farm.storage_sqlite import CrawlStore, SeenItem, SqliteEventSink


def _seen(*ids):
    return [SeenItem(source_item_id=i, url=f"https://dealer.se/bil/{i}") for i in ids]


def _run(store, ds):
    rid = store.create_run(customer_id="c1", data_source_id=ds, run_type="prod")
    store.mark_run_running(rid)
    return rid


def test_data_source_roundtrip(store):
    ds = store.add_data_source(customer_id="c1", base_url="https://dealer.se", config={"profileVersion": 1})
    got = store.get_data_source(ds)
    assert got.customer_id == "c1"
    assert got.name == "https://dealer.se"
    assert got.config == {"profileVersion": 1}

    store.save_profile_config(ds, {"profileVersion": 2})
    assert store.get_data_source(ds).config == {"profileVersion": 2}
    assert store.get_data_source("nope") is None


def test_run_lifecycle_and_terminal_states(store):
    rid = store.create_run(customer_id="c1", data_source_id="ds", run_type="probe", job_id="j1")
    assert store.get_run(rid)["status"] == "queued"

    store.mark_run_running(rid)
    run = store.get_run(rid)
    assert run["status"] == "running"
    assert run["started_at"]

    store.finish_run_success(rid, items_seen=3, items_new=2, items_removed=1, items_failed=1)
    run = store.get_run(rid)
    assert (run["status"], run["items_seen"], run["items_new"], run["items_removed"], run["items_failed"]) == (
        "success", 3, 2, 1, 1,
    )
    finished = run["finished_at"]
    assert finished

    with pytest.raises(RunStateError):
        store.finish_run_failed(rid, error_code="SCRAPE_CRASH", error_message="late")
    with pytest.raises(RunStateError):
        store.mark_run_running(rid)
    run = store.get_run(rid)
    assert run["status"] == "success"
    assert run["finished_at"] == finished
    assert run["error_code"] is None


def test_create_run_reuses_given_id_and_rejects_bad_type(store):
    a = store.create_run(customer_id="c1", data_source_id="ds", run_type="prod", run_id="r-1")
    b = store.create_run(customer_id="c1", data_source_id="ds", run_type="prod", run_id="r-1")
    assert a == b == "r-1"
    assert len(store.list_runs(data_source_id="ds")) == 1
    with pytest.raises(ValueError):
        store.create_run(customer_id="c1", data_source_id="ds", run_type="backfill")


def test_create_run_refuses_run_id_of_other_owner(store):
    store.create_run(customer_id="c1", data_source_id="ds", run_type="probe", run_id="r-1")
    for other in (
        {"customer_id": "c2", "data_source_id": "ds", "run_type": "probe"},
        {"customer_id": "c1", "data_source_id": "ds-2", "run_type": "probe"},
        {"customer_id": "c1", "data_source_id": "ds", "run_type": "prod"},
    ):
        with pytest.raises(RunStateError):
            store.create_run(run_id="r-1", **other)
    run = store.get_run("r-1")
    assert (run["customer_id"], run["data_source_id"], run["run_type"], run["status"]) == ("c1", "ds", "probe", "queued")


def test_upsert_seen_is_unique_per_source_item(store):
    ds = store.add_data_source(customer_id="c1", base_url="https://dealer.se")
    r1 = _run(store, ds)
    assert store.upsert_seen(customer_id="c1", data_source_id=ds, run_id=r1, items=_seen("a", "b")) == 2
    r2 = _run(store, ds)
    store.upsert_seen(
        customer_id="c1", data_source_id=ds, run_id=r2,
        items=[SeenItem(source_item_id="a", url="https://dealer.se/bil/a-moved")],
    )

    assert store.count_items(data_source_id=ds) == 2
    a = store.get_item(customer_id="c1", data_source_id=ds, source_item_id="a")
    assert a["url"] == "https://dealer.se/bil/a-moved"
    assert a["last_seen_run_id"] == r2
    assert a["first_seen_at"] <= a["last_seen_at"]


def test_same_item_id_in_other_source_is_separate(store):
    ds1 = store.add_data_source(customer_id="c1", base_url="https://a.se")
    ds2 = store.add_data_source(customer_id="c1", base_url="https://b.se")
    r1, r2 = _run(store, ds1), _run(store, ds2)
    store.upsert_seen(customer_id="c1", data_source_id=ds1, run_id=r1, items=_seen("x"))
    store.upsert_seen(customer_id="c1", data_source_id=ds2, run_id=r2, items=_seen("x"))
    assert store.count_items(data_source_id=ds1) == 1
    assert store.count_items(data_source_id=ds2) == 1


def test_mark_removed_and_reactivate(store):
    ds = store.add_data_source(customer_id="c1", base_url="https://dealer.se")
    r1 = _run(store, ds)
    store.upsert_seen(customer_id="c1", data_source_id=ds, run_id=r1, items=_seen("a", "b", "c"))

    r2 = _run(store, ds)
    store.upsert_seen(customer_id="c1", data_source_id=ds, run_id=r2, items=_seen("a"))
    assert store.mark_removed(customer_id="c1", data_source_id=ds, run_id=r2) == 2
    # повторный вызов ничего не меняет
    assert store.mark_removed(customer_id="c1", data_source_id=ds, run_id=r2) == 0

    b = store.get_item(customer_id="c1", data_source_id=ds, source_item_id="b")
    assert b["is_active"] is False and b["removed_at"]
    assert [i["source_item_id"] for i in store.list_items(data_source_id=ds, active_only=True)] == ["a"]

    r3 = _run(store, ds)
    store.upsert_seen(customer_id="c1", data_source_id=ds, run_id=r3, items=_seen("b"))
    b = store.get_item(customer_id="c1", data_source_id=ds, source_item_id="b")
    assert b["is_active"] is True and b["removed_at"] is None


def test_detail_candidates_are_new_unfetched_items(store):
    ds = store.add_data_source(customer_id="c1", base_url="https://dealer.se")
    r1 = _run(store, ds)
    store.upsert_seen(customer_id="c1", data_source_id=ds, run_id=r1, items=_seen("a", "b", "c"))

    assert store.count_detail_candidates(customer_id="c1", data_source_id=ds, run_id=r1) == 3
    picked = store.select_detail_candidates(customer_id="c1", data_source_id=ds, run_id=r1, limit=2)
    assert [p["source_item_id"] for p in picked] == ["a", "b"]

    store.update_item_detail(
        picked[0]["id"],
        run_id=r1,
        base_fields={"title": "Volvo", "price_amount": 1000, "price_currency": "SEK"},
        image_urls=["https://img/1.jpg"],
        attributes={"miltal": 5},
        content_hash="h",
    )
    assert store.count_detail_candidates(customer_id="c1", data_source_id=ds, run_id=r1) == 2
    a = store.get_item(customer_id="c1", data_source_id=ds, source_item_id="a")
    assert (a["title"], a["price_amount"], a["price_currency"]) == ("Volvo", 1000.0, "SEK")
    assert a["image_urls"] == ["https://img/1.jpg"]
    assert a["attributes"] == {"miltal": 5}
    assert a["last_detail_run_id"] == r1


def test_run_events_via_sink(store):
    sink = SqliteEventSink(store)
    sink.emit(RunEvent(customer_id="c1", job_type="scrape_prod", event_code="A", message="a", run_id="r1",
                       meta={"n": 1}))
    sink.emit(RunEvent(customer_id="c1", job_type="scrape_prod", event_code="B", message="b", run_id="r1"))
    sink.emit(RunEvent(customer_id="c1", job_type="scrape_prod", event_code="C", message="c", run_id="r2"))

    rows = store.list_run_events(run_id="r1")
    assert [r["event_code"] for r in rows] == ["A", "B"]
    assert rows[0]["meta"] == {"n": 1}
    assert rows[1]["meta"] == {}
    assert [r["event_code"] for r in store.list_run_events(limit=1)] == ["C"]


def test_schema_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "farm.db")
    with CrawlStore(path) as s:
        ds = s.add_data_source(customer_id="c1", base_url="https://dealer.se", source_id="ds-1")
    with CrawlStore(path) as s:
        assert s.get_data_source(ds).id == "ds-1"
