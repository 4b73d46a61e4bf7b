from __future__ import annotations

from listing_farm.content_hash import content_hash, content_hash_payload, hash_extracted, hash_fields, normalize_text
from listing_farm.extract import ExtractResult


def test_normalize_text_collapses_whitespace_and_case():
    assert normalize_text("  Volvo\n\tV70   Kombi ") == "volvo v70 kombi"
    assert normalize_text(None) == ""
    assert normalize_text("") == ""


def test_payload_defaults():
    p = content_hash_payload({}, None)
    assert p == {
        "title": "",
        "descriptionText": "",
        "priceAmount": 0.0,
        "priceCurrency": "",
        "primaryImageUrl": "",
        "attributesJson": {},
    }


def test_hash_is_stable_across_key_order_and_whitespace():
    a = hash_fields(
        {"title": "Volvo  V70", "price_amount": 99000, "price_currency": "SEK"},
        {"miltal": 12000, "bransle": "Diesel"},
    )
    b = hash_fields(
        {"price_currency": "SEK", "title": " volvo v70 ", "price_amount": 99000.0},
        {"bransle": "Diesel", "miltal": 12000},
    )
    assert a == b
    assert len(a) == 64


def test_hash_changes_with_content():
    base = {"title": "Volvo V70", "price_amount": 99000}
    assert hash_fields(base) != hash_fields(dict(base, price_amount=98000))
    assert hash_fields(base) != hash_fields(base, {"miltal": 1})
    assert hash_fields(base, {"farg": "Röd"}) != hash_fields(base, {"farg": "röd"})


def test_non_numeric_price_counts_as_zero():
    assert hash_fields({"price_amount": "n/a"}) == hash_fields({})
    assert content_hash(content_hash_payload({"price_amount": True}, None)) == hash_fields({})


def test_hash_extracted_matches_hash_fields():
    res = ExtractResult(base_fields={"title": "Saab 9-3"}, attributes={"miltal": 9000})
    assert hash_extracted(res) == hash_fields({"title": "Saab 9-3"}, {"miltal": 9000})
    assert hash_extracted(ExtractResult()) == hash_fields({})
