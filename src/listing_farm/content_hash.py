from __future__ import annotations

"""
content_hash.py — стабильный отпечаток содержимого карточки.

Что входит в hash:
- title / descriptionText — нормализованные (пробелы схлопнуты, trim, lowercase);
- priceAmount (0 если нет), priceCurrency / primaryImageUrl ("" если нет);
- attributesJson — атрибуты как есть.

Ключи сортируются на всех уровнях, поэтому hash одинаков между процессами и
не зависит от порядка ключей в attributes.
"""

import hashlib
import json
import re
from typing import Any, Mapping, Optional

_WS_RE = re.compile(r"\s+")


def normalize_text(s: Optional[str]) -> str:
    if not s:
        return ""
    return _WS_RE.sub(" ", str(s)).strip().lower()


def _price(x: Any) -> float:
    if x is None or isinstance(x, bool):
        return 0.0
    try:
        return float(x)
    except (TypeError, ValueError):
        return 0.0


def content_hash_payload(base_fields: Mapping[str, Any], attributes: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Канонический payload для hash (имена ключей как в хранилище ads-пайплайна)."""
    return {
        "title": normalize_text(base_fields.get("title")),
        "descriptionText": normalize_text(base_fields.get("description_text")),
        "priceAmount": _price(base_fields.get("price_amount")),
        "priceCurrency": str(base_fields.get("price_currency") or ""),
        "primaryImageUrl": str(base_fields.get("primary_image_url") or ""),
        "attributesJson": dict(attributes or {}),
    }


def content_hash(payload: Mapping[str, Any]) -> str:
    blob = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def hash_fields(base_fields: Mapping[str, Any], attributes: Optional[Mapping[str, Any]] = None) -> str:
    return content_hash(content_hash_payload(base_fields, attributes))


def hash_extracted(result: Any) -> str:
    """Hash для ExtractResult (или любого объекта с base_fields / attributes)."""
    return hash_fields(getattr(result, "base_fields", None) or {}, getattr(result, "attributes", None))
