from __future__ import annotations

"""
jobs.py — контракт очереди: что приходит воркеру и как он отчитывается.

Транспорт (брокер, ретраи, расписание) — снаружи. Здесь только:
- Job: job_id + payload {dataSourceId} + correlation {customerId, dataSourceId, runId?}
- JobHandle: ack() / dead_letter(reason)
- validate_correlation: ранняя проверка обязательных id
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


MISSING_CORRELATION = "MISSING_CORRELATION"
MISSING_CUSTOMER_ID = "MISSING_CUSTOMER_ID"
MISSING_DATA_SOURCE_ID = "MISSING_DATA_SOURCE_ID"
DATA_SOURCE_MISMATCH = "DATA_SOURCE_MISMATCH"


@dataclass
class Correlation:
    customer_id: str
    data_source_id: str
    run_id: Optional[str] = None


@dataclass
class CorrelationCheck:
    ok: bool
    correlation: Optional[Correlation] = None
    reason: Optional[str] = None


@dataclass
class Job:
    job_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    correlation: Optional[dict[str, Any]] = None


class JobHandle(Protocol):
    def ack(self) -> None:
        ...

    def dead_letter(self, reason: str) -> None:
        ...


class RecordingJobHandle:
    """JobHandle без брокера: запоминает исход (для CLI и тестов)."""

    def __init__(self) -> None:
        self.acked = False
        self.dead_letter_reason: Optional[str] = None

    def ack(self) -> None:
        self.acked = True

    def dead_letter(self, reason: str) -> None:
        self.dead_letter_reason = reason

    @property
    def outcome(self) -> str:
        if self.acked:
            return "ack"
        if self.dead_letter_reason is not None:
            return "dead_letter"
        return "pending"


def _clean_id(x: Any) -> Optional[str]:
    if x is None:
        return None
    s = str(x).strip()
    return s or None


def validate_correlation(raw: Any, payload: Optional[dict[str, Any]] = None) -> CorrelationCheck:
    """
    customerId и dataSourceId обязательны (пробелы = пусто), runId опционален.
    Принимает camelCase (как в очереди) и snake_case ключи.
    Если payload несёт свой dataSourceId, он обязан совпасть с correlation.
    """
    if not isinstance(raw, dict):
        return CorrelationCheck(ok=False, reason=MISSING_CORRELATION)
    customer_id = _clean_id(raw.get("customerId", raw.get("customer_id")))
    if customer_id is None:
        return CorrelationCheck(ok=False, reason=MISSING_CUSTOMER_ID)
    data_source_id = _clean_id(raw.get("dataSourceId", raw.get("data_source_id")))
    if data_source_id is None:
        return CorrelationCheck(ok=False, reason=MISSING_DATA_SOURCE_ID)
    if isinstance(payload, dict):
        declared = _clean_id(payload.get("dataSourceId", payload.get("data_source_id")))
        if declared is not None and declared != data_source_id:
            return CorrelationCheck(ok=False, reason=DATA_SOURCE_MISMATCH)
    run_id = _clean_id(raw.get("runId", raw.get("run_id")))
    return CorrelationCheck(
        ok=True,
        correlation=Correlation(customer_id=customer_id, data_source_id=data_source_id, run_id=run_id),
    )
