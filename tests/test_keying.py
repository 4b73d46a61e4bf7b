from __future__ import annotations

from listing_farm.discovery import DiscoveredItem, DiscoveryResult, coerce_discovery, simulate_removals
from listing_farm.keying import ensure_unique_id, extract_source_item_id, is_likely_detail_url, normalize_url
from listing_farm.site_profile import IdFromUrl, SiteProfile


def test_normalize_url_resolves_relative_and_drops_fragment():
    assert normalize_url("/bil/abc/#bilder", base_url="https://Dealer.se/") == "https://dealer.se/bil/abc"
    assert normalize_url("https://dealer.se/") == "https://dealer.se/"
    assert normalize_url("https://dealer.se/bil?id=5", strip_query=True) == "https://dealer.se/bil"
    assert normalize_url("mailto:x@y.se") is None
    assert normalize_url("   ") is None


def test_normalize_url_same_host():
    assert normalize_url("https://cdn.other.se/x", base_url="https://dealer.se", same_host=True) is None
    assert normalize_url("/x", base_url="https://dealer.se", same_host=True) == "https://dealer.se/x"


def test_source_item_id_from_last_segment_and_regex():
    url = "https://dealer.se/bil/Volvo-V70-ABC123"
    assert extract_source_item_id(url) == "volvo-v70-abc123"
    rule = IdFromUrl(mode="regex", regex=r"-([A-Z0-9]+)$")
    assert extract_source_item_id(url, rule) == "abc123"
    # regex не совпал -> последний сегмент
    assert extract_source_item_id("https://dealer.se/bil/x", rule) == "x"


def test_source_item_id_falls_back_to_hash_for_root():
    sid = extract_source_item_id("https://dealer.se/")
    assert len(sid) == 12
    assert sid == extract_source_item_id("https://dealer.se/")


def test_ensure_unique_id_suffixes_conflicts():
    seen: set[str] = set()
    a = ensure_unique_id("123", "https://a.se/bil/123", seen)
    b = ensure_unique_id("123", "https://a.se/mc/123", seen)
    assert a == "123"
    assert b.startswith("123-") and len(b) == len("123-") + 6
    assert seen == {a, b}


def test_is_likely_detail_url():
    assert is_likely_detail_url("https://dealer.se/Bil/volvo")
    assert is_likely_detail_url("https://dealer.se/kopa-bil/volvo")
    assert not is_likely_detail_url("https://dealer.se/om-oss")
    assert is_likely_detail_url("https://dealer.se/om-oss", tokens=("/om-",))


def test_coerce_discovery_dedupes_and_derives_ids():
    profile = SiteProfile()
    raw = [
        "/bil/a1",
        "https://dealer.se/bil/a1#x",
        {"url": "https://dealer.se/mc/a1"},
        {"url": "https://dealer.se/bil/b2", "sourceItemId": "B-2"},
        DiscoveredItem(source_item_id="c3", url="https://dealer.se/bil/c3"),
        "ftp://nope",
        42,
    ]

    res = coerce_discovery(raw, profile, "https://dealer.se")

    assert [i.url for i in res.items] == [
        "https://dealer.se/bil/a1",
        "https://dealer.se/mc/a1",
        "https://dealer.se/bil/b2",
        "https://dealer.se/bil/c3",
    ]
    ids = [i.source_item_id for i in res.items]
    assert ids[0] == "a1"
    assert ids[1].startswith("a1-")
    assert ids[2:] == ["b-2", "c3"]
    assert len(set(ids)) == len(ids)


def test_coerce_discovery_keeps_meta():
    res = coerce_discovery(DiscoveryResult(items=[], meta={"pages": 3}), SiteProfile(), "https://dealer.se")
    assert res.meta == {"pages": 3}
    assert coerce_discovery(None, SiteProfile(), "https://dealer.se").items == []


def test_simulate_removals_keeps_at_least_one():
    items = [DiscoveredItem(source_item_id=str(i), url=f"https://d.se/{i}") for i in range(10)]
    assert len(simulate_removals(items, 0.1)) == 9
    assert len(simulate_removals(items, 1.0)) == 1
    assert simulate_removals(items, None) is items
