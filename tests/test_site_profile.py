from __future__ import annotations

import json

from listing_farm.probe import build_profile
from listing_farm.site_profile import (
    DEFAULT_LIMITS,
    Limits,
    SiteProfile,
    build_trial_profile,
    load_profile,
    resolve_profile,
    save_profile,
)


def _valid_config(**over):
    cfg = {
        "profileVersion": 1,
        "probe": {"testedAt": "2026-01-01T00:00:00+00:00", "confidence": 0.9, "notes": []},
        "discovery": {
            "strategy": "sitemap",
            "seedUrls": [],
            "sitemapUrls": ["https://dealer.se/sitemap.xml"],
            "detailUrlPatterns": ["^https?://[^/]+/bil/[^/]+/?$"],
            "idFromUrl": {"mode": "last_segment"},
        },
        "fetch": {"driver": "http", "http": {"timeoutMs": 15000}, "headless": {"enabled": False, "timeoutMs": 30000}},
        "extract": {"vertical": "vehicle", "strategy": "dom"},
        "limits": {"maxNewPerRun": 20},
    }
    cfg.update(over)
    return cfg


def test_resolve_profile_accepts_valid_config_and_json_string():
    p = resolve_profile(_valid_config())
    assert p is not None
    assert p.discovery.strategy == "sitemap"
    assert p.discovery.sitemap_urls == ["https://dealer.se/sitemap.xml"]
    assert p.extract.vertical == "vehicle"
    assert p.limits.max_new_per_run == 20
    assert p.limits.concurrency == DEFAULT_LIMITS["concurrency"]

    assert resolve_profile(json.dumps(_valid_config())).discovery.strategy == "sitemap"


def test_resolve_profile_rejects_missing_or_stale():
    assert resolve_profile(None) is None
    assert resolve_profile("") is None
    assert resolve_profile("{not json") is None
    assert resolve_profile([]) is None
    assert resolve_profile(_valid_config(profileVersion="1")) is None
    assert resolve_profile(_valid_config(profileVersion=True)) is None
    assert resolve_profile(_valid_config(discovery=None)) is None
    assert resolve_profile(_valid_config(discovery={"seedUrls": []})) is None
    assert resolve_profile(_valid_config(discovery={"strategy": "unknown"})) is None
    assert resolve_profile(_valid_config(discovery={"strategy": "crawl_everything"})) is None


def test_from_dict_is_tolerant():
    p = SiteProfile.from_dict({
        "profileVersion": 1,
        "discovery": {"strategy": "HTML_LINKS", "seedUrls": ["https://a.se", 5, ""]},
        "fetch": {"driver": "telnet", "http": {"timeoutMs": "abc"}},
        "extract": {"vertical": "boats"},
        "limits": {"concurrency": "x", "removalThreshold": "7"},
    })
    assert p.discovery.strategy == "html_links"
    assert p.discovery.seed_urls == ["https://a.se"]
    assert p.fetch.driver == "http"
    assert p.fetch.http.timeout_ms == 15000
    assert p.extract.vertical == "generic"
    assert p.limits.concurrency == 6
    assert p.limits.removal_threshold == 7


def test_profile_dict_roundtrip_keeps_camel_case():
    p = build_profile(
        "https://dealer.se",
        strategy="html_links",
        confidence=0.5,
        notes=["few items"],
        detail_url_patterns=["^https?://[^/]+/bil/[^/]+/?$"],
        vertical="vehicle",
        tested_at="2026-01-01T00:00:00+00:00",
    )
    d = p.to_dict()
    assert d["profileVersion"] == 1
    assert d["discovery"]["seedUrls"] == ["https://dealer.se"]
    assert d["discovery"]["idFromUrl"] == {"mode": "last_segment"}
    assert d["fetch"]["headless"] == {"enabled": False, "timeoutMs": 30000}
    assert "removalThreshold" not in d["limits"]
    assert SiteProfile.from_dict(d) == p


def test_limits_defaults():
    lim = Limits.from_dict(None)
    assert lim.to_dict() == DEFAULT_LIMITS
    assert lim.removal_threshold is None


def test_trial_profile_enables_headless_only_for_headless_listing():
    assert build_trial_profile("https://a.se", "headless_listing").fetch.headless.enabled is True
    assert build_trial_profile("https://a.se", "sitemap").fetch.headless.enabled is False
    assert build_trial_profile("https://a.se", "endpoint_sniff").discovery.seed_urls == ["https://a.se"]


def test_save_and_load_profile(tmp_path):
    p = resolve_profile(_valid_config())
    path = tmp_path / "profile.json"
    save_profile(p, str(path))
    assert load_profile(str(path)) == p
