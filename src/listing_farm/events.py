from __future__ import annotations

"""
events.py — пользовательский журнал прогона (run events).

Принцип fire-and-forget: ошибка sink'а НИКОГДА не роняет прогон,
она только уходит в logging как warning.

Sinks:
- SqliteEventSink  — таблица run_events (см. storage_sqlite.CrawlStore)
- JsonlEventSink   — одна строка JSON на событие (append)
- LoggingEventSink — в стандартный logging
- MemoryEventSink  — для тестов
- MultiSink        — веер на несколько sinks
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SECRET_KEY_MARKERS = (
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "authorization", "cookie", "session", "credential", "private_key",
)
_MAX_DEPTH = 6

LEVELS = ("info", "warn", "error")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_secret_key(key: str) -> bool:
    k = key.lower().replace("-", "_")
    return any(m in k for m in SECRET_KEY_MARKERS)


def sanitize_for_log(value: Any, _depth: int = 0) -> Any:
    """Рекурсивно заменить значения секретных ключей на [REDACTED] и привести к JSON-типам."""
    if _depth > _MAX_DEPTH:
        return "[TRUNCATED]"
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            ks = str(k)
            out[ks] = REDACTED if _is_secret_key(ks) else sanitize_for_log(v, _depth + 1)
        return out
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(v, _depth + 1) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


@dataclass
class RunEvent:
    customer_id: str
    job_type: str
    event_code: str
    message: str
    level: str = "info"
    stage: Optional[str] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None
    data_source_id: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventSink(Protocol):
    def emit(self, event: RunEvent) -> None:
        ...


class MemoryEventSink:
    def __init__(self) -> None:
        self.events: list[RunEvent] = []

    def emit(self, event: RunEvent) -> None:
        self.events.append(event)

    def codes(self) -> list[str]:
        return [e.event_code for e in self.events]

    def by_code(self, code: str) -> list[RunEvent]:
        return [e for e in self.events if e.event_code == code]


class JsonlEventSink:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: RunEvent) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")


_LEVEL_MAP = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class LoggingEventSink:
    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger("listing_farm.run_events")

    def emit(self, event: RunEvent) -> None:
        self.log.log(
            _LEVEL_MAP.get(event.level, logging.INFO),
            "%s run=%s source=%s %s",
            event.event_code, event.run_id, event.data_source_id, event.message,
        )


class MultiSink:
    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: RunEvent) -> None:
        for s in self.sinks:
            s.emit(event)


class EventEmitter:
    """
    Обёртка над sink с контекстом прогона (customer/job/run/source).

    emit() не бросает исключений: сбой sink логируется и глотается.
    """

    def __init__(
        self,
        sink: Optional[EventSink],
        *,
        customer_id: str,
        job_type: str,
        job_id: Optional[str] = None,
        run_id: Optional[str] = None,
        data_source_id: Optional[str] = None,
    ) -> None:
        self.sink = sink
        self.customer_id = customer_id
        self.job_type = job_type
        self.job_id = job_id
        self.run_id = run_id
        self.data_source_id = data_source_id

    def emit(
        self,
        event_code: str,
        message: str,
        *,
        level: str = "info",
        stage: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        if self.sink is None:
            return
        ev = RunEvent(
            customer_id=self.customer_id,
            job_type=self.job_type,
            event_code=event_code,
            message=message,
            level=level if level in LEVELS else "info",
            stage=stage,
            job_id=self.job_id,
            run_id=self.run_id,
            data_source_id=self.data_source_id,
            meta=sanitize_for_log(meta or {}),
        )
        try:
            self.sink.emit(ev)
        except Exception:
            logger.warning("run event sink failed for %s (run=%s)", event_code, self.run_id, exc_info=True)

    def info(self, event_code: str, message: str, **kw: Any) -> None:
        self.emit(event_code, message, level="info", **kw)

    def warn(self, event_code: str, message: str, **kw: Any) -> None:
        self.emit(event_code, message, level="warn", **kw)

    def error(self, event_code: str, message: str, **kw: Any) -> None:
        self.emit(event_code, message, level="error", **kw)
