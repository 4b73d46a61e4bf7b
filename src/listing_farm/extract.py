from __future__ import annotations

"""
extract.py — контракт извлечения карточки (сам DOM/schema.org парсинг подключается плагином).

Extractor получает профиль и скачанную страницу и возвращает ExtractResult:
- base_fields: title, description_text, price_amount, price_currency, primary_image_url
- image_urls: все картинки карточки
- attributes: вертикальные атрибуты (для vehicle: regNr, miltal, ...)
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Union

from .drivers import FetchResult
from .site_profile import SiteProfile


BASE_FIELD_KEYS = ("title", "description_text", "price_amount", "price_currency", "primary_image_url")


@dataclass
class ExtractResult:
    base_fields: dict[str, Any] = field(default_factory=dict)
    image_urls: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> Optional[str]:
        t = self.base_fields.get("title")
        return t if isinstance(t, str) else None

    def looks_like_detail(self) -> bool:
        """Страница годится как detail, если есть непустой title или хотя бы одна картинка."""
        return bool((self.title or "").strip()) or len(self.image_urls) > 0


class Extractor(Protocol):
    def extract(self, profile: SiteProfile, page: FetchResult) -> ExtractResult:
        ...


class FunctionExtractor:
    """Адаптер: обычная функция (profile, page) -> ExtractResult | dict как Extractor."""

    def __init__(self, fn: Callable[[SiteProfile, FetchResult], Union[ExtractResult, dict[str, Any]]]) -> None:
        self.fn = fn

    def extract(self, profile: SiteProfile, page: FetchResult) -> ExtractResult:
        return coerce_extract_result(self.fn(profile, page))


def coerce_extract_result(x: Any) -> ExtractResult:
    """ExtractResult или dict {base_fields, image_urls, attributes} -> ExtractResult."""
    if isinstance(x, ExtractResult):
        return x
    if not isinstance(x, dict):
        return ExtractResult()
    base = x.get("base_fields") if isinstance(x.get("base_fields"), dict) else {}
    imgs = x.get("image_urls") if isinstance(x.get("image_urls"), (list, tuple)) else []
    attrs = x.get("attributes") if isinstance(x.get("attributes"), dict) else {}
    return ExtractResult(
        base_fields={k: base.get(k) for k in BASE_FIELD_KEYS if k in base},
        image_urls=[u for u in imgs if isinstance(u, str) and u],
        attributes=dict(attrs),
    )
