from __future__ import annotations

import re

from listing_farm.pattern_learn import learn_detail_url_pattern, matches_detail_pattern, pick_pattern_samples
from listing_farm.vertical import classify_vertical


def test_learn_pattern_from_first_sample():
    pats = learn_detail_url_pattern([
        "https://x.se/bil/volvo-v70-abc123",
        "https://x.se/annat/slug",
    ])
    assert pats == [r"^https?://[^/]+/bil/[^/]+/?$"]
    assert re.search(pats[0], "http://x.se/bil/saab-93/")
    assert not re.search(pats[0], "https://x.se/bil/saab/93")


def test_learn_pattern_escapes_prefix():
    pats = learn_detail_url_pattern(["https://x.se/cars.used/item-1"])
    assert pats == [r"^https?://[^/]+/cars\.used/[^/]+/?$"]

    pats = learn_detail_url_pattern(["https://x.se/begagnade-bilar/(v70)/item-1"])
    assert pats == [r"^https?://[^/]+/begagnade-bilar/\(v70\)/[^/]+/?$"]
    assert re.search(pats[0], "https://x.se/begagnade-bilar/(v70)/item-2")


def test_learn_pattern_edge_cases():
    assert learn_detail_url_pattern([]) == []
    assert learn_detail_url_pattern(["https://x.se/only-one"]) == [".*"]
    assert learn_detail_url_pattern(["https://x.se/"]) == [".*"]


def test_pick_pattern_samples_prefers_detail_like():
    urls = ["https://x.se/om", "https://x.se/bil/1", "https://x.se/kontakt", "https://x.se/bil/2"]
    assert pick_pattern_samples(urls, limit=3) == ["https://x.se/bil/1", "https://x.se/bil/2", "https://x.se/om"]
    assert pick_pattern_samples(urls, limit=0) == []


def test_matches_detail_pattern():
    assert matches_detail_pattern("https://x.se/a", [])
    assert matches_detail_pattern("https://x.se/bil/1", ["[", r"/bil/"])
    assert not matches_detail_pattern("https://x.se/mc/1", [r"/bil/"])


def test_classify_vertical():
    assert classify_vertical({"miltal": 15000}) == "vehicle"
    assert classify_vertical({"mileage": 0}) == "vehicle"
    assert classify_vertical({"regNr": None, "color": "red"}) == "vehicle"
    assert classify_vertical({"regNr": None}) == "generic"
    assert classify_vertical({"size": "XL"}) == "generic"
    assert classify_vertical({}) == "generic"
    assert classify_vertical(None) == "generic"
