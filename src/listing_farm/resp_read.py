from __future__ import annotations

"""
resp_read.py — текст из requests.Response и ограничение размера HTML перед разбором.

HTTP здесь нет. Порядок выбора кодировки:
1) charset из Content-Type;
2) <meta charset> / http-equiv в первых килобайтах (старые сайты дилеров любят windows-1252);
3) resp.encoding, если requests вывел его не по умолчанию;
4) utf-8 с заменой битых байт.
Бинарные ответы (картинки, pdf, архивы) -> None.
"""

import codecs
import re
from dataclasses import dataclass
from typing import Optional

import requests

_HEADER_CHARSET_RE = re.compile(r"charset=[\"']?([\w.:-]+)", re.IGNORECASE)
_META_CHARSET_RE = re.compile(rb"<meta[^>]+charset=[\"']?([\w.:-]+)", re.IGNORECASE)
META_SNIFF_BYTES = 4096

BINARY_TYPES = ("image/", "audio/", "video/", "application/pdf", "application/zip",
                "application/gzip", "application/octet-stream")


@dataclass
class DecodedBody:
    text: str
    encoding: str
    source: str


@dataclass
class Truncation:
    text: str
    truncated: bool
    original_bytes: int
    truncated_bytes: int


def _known_codec(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    try:
        return codecs.lookup(name).name
    except LookupError:
        return None


def _charset_candidates(resp: requests.Response, raw: bytes):
    m = _HEADER_CHARSET_RE.search(resp.headers.get("Content-Type", ""))
    yield (m.group(1) if m else None), "header_charset"
    m2 = _META_CHARSET_RE.search(raw[:META_SNIFF_BYTES])
    yield (m2.group(1).decode("ascii", "ignore") if m2 else None), "meta_charset"
    # ISO-8859-1 requests подставляет сам для text/* без charset
    if resp.encoding and resp.encoding.lower() != "iso-8859-1":
        yield resp.encoding, "requests_encoding"


def read_text_safely(resp: requests.Response) -> Optional[DecodedBody]:
    ctype = (resp.headers.get("Content-Type") or "").lower()
    if ctype.startswith(BINARY_TYPES):
        return None

    raw = resp.content or b""
    for name, source in _charset_candidates(resp, raw):
        enc = _known_codec(name)
        if enc is not None:
            return DecodedBody(text=raw.decode(enc, errors="replace"), encoding=enc, source=source)
    return DecodedBody(text=raw.decode("utf-8", errors="replace"), encoding="utf-8", source="fallback_utf8")


def truncate_html(text: str, max_bytes: int) -> Truncation:
    """Обрезать текст до max_bytes байт UTF-8 (по границе символа)."""
    blob = (text or "").encode("utf-8")
    original = len(blob)
    if max_bytes <= 0 or original <= max_bytes:
        return Truncation(text=text or "", truncated=False, original_bytes=original, truncated_bytes=original)
    cut = blob[:max_bytes].decode("utf-8", errors="ignore")
    return Truncation(text=cut, truncated=True, original_bytes=original, truncated_bytes=len(cut.encode("utf-8")))
