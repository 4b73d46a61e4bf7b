from __future__ import annotations

"""
storage_sqlite.py — SQLite-хранилище состояния краулера.

Таблицы:
1) data_sources — источники (сайты клиентов) + config_json (SiteProfile)
2) scrape_runs  — прогоны probe/prod: статус, счётчики, код ошибки
3) items        — карточки: жизненный цикл (seen/removed) + контент (detail)
4) run_events   — журнал событий прогонов

Правила items:
- уникальность (customer_id, data_source_id, source_item_id) — UNIQUE в схеме;
- is_active = 0  <=>  removed_at IS NOT NULL;
- "видели в прогоне" <=> last_seen_run_id = run.id;
- поля жизненного цикла пишут только upsert_seen / mark_removed,
  контентные поля — только update_item_detail.

Термины:
- upsert: INSERT если нет, иначе UPDATE (здесь: try INSERT -> IntegrityError -> UPDATE)
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from .errors import RunStateError
from .events import RunEvent


RUN_TYPES = ("probe", "prod")
RUN_STATUSES = ("queued", "running", "success", "failed")
TERMINAL_STATUSES = ("success", "failed")


@dataclass
class DataSource:
    id: str
    customer_id: str
    name: str
    base_url: str
    config: Optional[dict[str, Any]]


@dataclass
class SeenItem:
    source_item_id: str
    url: str


class CrawlStore:
    """
    Хранилище одного воркера (одно соединение на экземпляр).

    Параллельные прогоны разных источников — разные экземпляры CrawlStore
    на один файл (WAL).
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        try:
            self.conn.commit()
        finally:
            self.conn.close()

    def __enter__(self) -> "CrawlStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS data_sources (
                id TEXT PRIMARY KEY,
                customer_id TEXT NOT NULL,
                name TEXT NOT NULL,
                base_url TEXT NOT NULL,
                config_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_data_sources_customer ON data_sources(customer_id);")

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scrape_runs (
                id TEXT PRIMARY KEY,
                customer_id TEXT NOT NULL,
                data_source_id TEXT NOT NULL,
                run_type TEXT NOT NULL,
                status TEXT NOT NULL,
                job_id TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                items_seen INTEGER NOT NULL DEFAULT 0,
                items_new INTEGER NOT NULL DEFAULT 0,
                items_removed INTEGER NOT NULL DEFAULT 0,
                items_failed INTEGER NOT NULL DEFAULT 0,
                error_code TEXT,
                error_message TEXT
            );
            """
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_scrape_runs_source ON scrape_runs(data_source_id, created_at);")

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                customer_id TEXT NOT NULL,
                data_source_id TEXT NOT NULL,
                source_item_id TEXT NOT NULL,
                url TEXT NOT NULL,

                title TEXT,
                description_text TEXT,
                price_amount REAL,
                price_currency TEXT,
                primary_image_url TEXT,
                image_urls_json TEXT,
                attributes_json TEXT,
                content_hash TEXT,

                is_active INTEGER NOT NULL DEFAULT 1,
                removed_at TEXT,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                last_seen_run_id TEXT,
                detail_fetched_at TEXT,
                last_detail_run_id TEXT,
                updated_at TEXT NOT NULL,

                UNIQUE(customer_id, data_source_id, source_item_id)
            );
            """
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_items_seen_run ON items(data_source_id, last_seen_run_id);")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_items_active ON items(data_source_id, is_active);")

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_events (
                eid INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                customer_id TEXT NOT NULL,
                job_type TEXT NOT NULL,
                job_id TEXT,
                run_id TEXT,
                data_source_id TEXT,
                level TEXT NOT NULL,
                stage TEXT,
                event_code TEXT NOT NULL,
                message TEXT NOT NULL,
                meta_json TEXT
            );
            """
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events(run_id, eid);")
        self.conn.commit()

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _json_or_none(s: Any) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except ValueError:
            return None

    # -----------------
    # data sources
    # -----------------

    def add_data_source(
        self,
        *,
        customer_id: str,
        base_url: str,
        name: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        source_id: Optional[str] = None,
    ) -> str:
        sid = source_id or self.new_id()
        now = self._now_iso()
        self.conn.execute(
            "INSERT INTO data_sources(id, customer_id, name, base_url, config_json, created_at, updated_at) VALUES(?,?,?,?,?,?,?)",
            (
                sid, str(customer_id), str(name or base_url), str(base_url),
                json.dumps(config, ensure_ascii=False) if config is not None else None,
                now, now,
            ),
        )
        self.conn.commit()
        return sid

    def get_data_source(self, source_id: str) -> Optional[DataSource]:
        row = self.conn.execute(
            "SELECT id, customer_id, name, base_url, config_json FROM data_sources WHERE id=?",
            (str(source_id),),
        ).fetchone()
        if not row:
            return None
        cfg = self._json_or_none(row["config_json"])
        return DataSource(
            id=row["id"],
            customer_id=row["customer_id"],
            name=row["name"],
            base_url=row["base_url"],
            config=cfg if isinstance(cfg, dict) else None,
        )

    def save_profile_config(self, source_id: str, config: dict[str, Any]) -> None:
        self.conn.execute(
            "UPDATE data_sources SET config_json=?, updated_at=? WHERE id=?",
            (json.dumps(config, ensure_ascii=False), self._now_iso(), str(source_id)),
        )
        self.conn.commit()

    # -----------------
    # runs
    # -----------------

    def create_run(
        self,
        *,
        customer_id: str,
        data_source_id: str,
        run_type: str,
        job_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> str:
        """
        Новый прогон в статусе queued.
        Если run_id передан (из correlation) и такой прогон уже есть — переиспользуем его,
        но только если он того же клиента, источника и типа; иначе RunStateError, строку не трогаем.
        """
        if run_type not in RUN_TYPES:
            raise ValueError(f"Unknown run_type: {run_type!r}")
        rid = run_id or self.new_id()
        existing = self.get_run(run_id) if run_id else None
        if existing is not None:
            owner = (existing["customer_id"], existing["data_source_id"], existing["run_type"])
            if owner != (str(customer_id), str(data_source_id), run_type):
                raise RunStateError(f"Run {run_id} belongs to another customer, data source or run type")
            return rid
        self.conn.execute(
            """
            INSERT INTO scrape_runs(id, customer_id, data_source_id, run_type, status, job_id, created_at)
            VALUES(?,?,?,?,?,?,?)
            """,
            (rid, str(customer_id), str(data_source_id), run_type, "queued", job_id, self._now_iso()),
        )
        self.conn.commit()
        return rid

    def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM scrape_runs WHERE id=?", (str(run_id),)).fetchone()
        return dict(row) if row else None

    def list_runs(self, *, data_source_id: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
        if data_source_id:
            rows = self.conn.execute(
                "SELECT * FROM scrape_runs WHERE data_source_id=? ORDER BY created_at DESC LIMIT ?",
                (str(data_source_id), int(limit)),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM scrape_runs ORDER BY created_at DESC LIMIT ?", (int(limit),),
            ).fetchall()
        return [dict(r) for r in rows]

    def mark_run_running(self, run_id: str, *, job_id: Optional[str] = None) -> None:
        cur = self.conn.execute(
            """
            UPDATE scrape_runs
            SET status='running',
                started_at=COALESCE(started_at, ?),
                job_id=COALESCE(?, job_id)
            WHERE id=? AND status IN ('queued', 'running')
            """,
            (self._now_iso(), job_id, str(run_id)),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            raise RunStateError(f"Run {run_id} is missing or already finished")

    def _finish(self, run_id: str, sets: str, args: tuple[Any, ...]) -> None:
        # terminal -> terminal запрещён: finished_at пишется ровно один раз
        cur = self.conn.execute(
            f"UPDATE scrape_runs SET {sets}, finished_at=? WHERE id=? AND status IN ('queued', 'running')",
            args + (self._now_iso(), str(run_id)),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            raise RunStateError(f"Run {run_id} is missing or already finished")

    def finish_run_success(
        self,
        run_id: str,
        *,
        items_seen: int = 0,
        items_new: int = 0,
        items_removed: int = 0,
        items_failed: int = 0,
    ) -> None:
        self._finish(
            run_id,
            "status='success', items_seen=?, items_new=?, items_removed=?, items_failed=?",
            (int(items_seen), int(items_new), int(items_removed), int(items_failed)),
        )

    def finish_run_failed(self, run_id: str, *, error_code: str, error_message: str) -> None:
        self._finish(run_id, "status='failed', error_code=?, error_message=?", (str(error_code), str(error_message)))

    # -----------------
    # items: lifecycle
    # -----------------

    def upsert_seen(
        self,
        *,
        customer_id: str,
        data_source_id: str,
        run_id: str,
        items: Iterable[Any],
    ) -> int:
        """
        Отметить items как увиденные в прогоне run_id.

        Новый -> INSERT (active, first_seen_at=now).
        Существующий -> UPDATE url/last_seen_*; удалённый ранее реактивируется.
        Возвращает число обработанных записей.
        """
        now = self._now_iso()
        n = 0
        for it in items:
            sid = str(getattr(it, "source_item_id"))
            url = str(getattr(it, "url"))
            try:
                self.conn.execute(
                    """
                    INSERT INTO items(id, customer_id, data_source_id, source_item_id, url,
                                      is_active, removed_at, first_seen_at, last_seen_at, last_seen_run_id, updated_at)
                    VALUES(?,?,?,?,?,1,NULL,?,?,?,?)
                    """,
                    (self.new_id(), str(customer_id), str(data_source_id), sid, url, now, now, str(run_id), now),
                )
            except sqlite3.IntegrityError:
                self.conn.execute(
                    """
                    UPDATE items
                    SET url=?,
                        is_active=1,
                        removed_at=NULL,
                        last_seen_at=?,
                        last_seen_run_id=?,
                        updated_at=?
                    WHERE customer_id=? AND data_source_id=? AND source_item_id=?
                    """,
                    (url, now, str(run_id), now, str(customer_id), str(data_source_id), sid),
                )
            n += 1
        self.conn.commit()
        return n

    def mark_removed(self, *, customer_id: str, data_source_id: str, run_id: str) -> int:
        """Все активные items источника, НЕ увиденные в run_id -> removed. Возвращает число."""
        now = self._now_iso()
        cur = self.conn.execute(
            """
            UPDATE items
            SET is_active=0, removed_at=?, updated_at=?
            WHERE customer_id=? AND data_source_id=? AND is_active=1
              AND (last_seen_run_id IS NULL OR last_seen_run_id != ?)
            """,
            (now, now, str(customer_id), str(data_source_id), str(run_id)),
        )
        self.conn.commit()
        return int(cur.rowcount or 0)

    _CANDIDATES_WHERE = (
        "customer_id=? AND data_source_id=? AND last_seen_run_id=? AND is_active=1 AND detail_fetched_at IS NULL"
    )

    def count_detail_candidates(self, *, customer_id: str, data_source_id: str, run_id: str) -> int:
        row = self.conn.execute(
            f"SELECT COUNT(*) FROM items WHERE {self._CANDIDATES_WHERE}",
            (str(customer_id), str(data_source_id), str(run_id)),
        ).fetchone()
        return int(row[0]) if row else 0

    def select_detail_candidates(
        self, *, customer_id: str, data_source_id: str, run_id: str, limit: int,
    ) -> list[dict[str, Any]]:
        """Порядок детерминирован: first_seen_at, затем порядок вставки."""
        rows = self.conn.execute(
            f"""
            SELECT id, source_item_id, url FROM items
            WHERE {self._CANDIDATES_WHERE}
            ORDER BY first_seen_at ASC, rowid ASC
            LIMIT ?
            """,
            (str(customer_id), str(data_source_id), str(run_id), max(0, int(limit))),
        ).fetchall()
        return [dict(r) for r in rows]

    # -----------------
    # items: content
    # -----------------

    def update_item_detail(
        self,
        item_id: str,
        *,
        run_id: str,
        base_fields: dict[str, Any],
        image_urls: list[str],
        attributes: dict[str, Any],
        content_hash: str,
    ) -> None:
        now = self._now_iso()
        price = base_fields.get("price_amount")
        self.conn.execute(
            """
            UPDATE items
            SET title=?, description_text=?, price_amount=?, price_currency=?, primary_image_url=?,
                image_urls_json=?, attributes_json=?, content_hash=?,
                detail_fetched_at=?, last_detail_run_id=?, updated_at=?
            WHERE id=?
            """,
            (
                base_fields.get("title"),
                base_fields.get("description_text"),
                float(price) if isinstance(price, (int, float)) and not isinstance(price, bool) else None,
                base_fields.get("price_currency"),
                base_fields.get("primary_image_url"),
                json.dumps(list(image_urls or []), ensure_ascii=False),
                json.dumps(attributes or {}, ensure_ascii=False, sort_keys=True),
                content_hash,
                now, str(run_id), now,
                str(item_id),
            ),
        )
        self.conn.commit()

    def _row_to_item(self, row: Any) -> dict[str, Any]:
        d = dict(row)
        d["image_urls"] = self._json_or_none(d.pop("image_urls_json", None)) or []
        d["attributes"] = self._json_or_none(d.pop("attributes_json", None)) or {}
        d["is_active"] = bool(d.get("is_active"))
        return d

    def get_item(self, *, customer_id: str, data_source_id: str, source_item_id: str) -> Optional[dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM items WHERE customer_id=? AND data_source_id=? AND source_item_id=?",
            (str(customer_id), str(data_source_id), str(source_item_id)),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(
        self,
        *,
        data_source_id: str,
        active_only: bool = False,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        q = "SELECT * FROM items WHERE data_source_id=?"
        args: list[Any] = [str(data_source_id)]
        if active_only:
            q += " AND is_active=1"
        q += " ORDER BY first_seen_at ASC, rowid ASC LIMIT ? OFFSET ?"
        args.extend([int(limit), int(offset)])
        return [self._row_to_item(r) for r in self.conn.execute(q, tuple(args)).fetchall()]

    def count_items(self, *, data_source_id: str, active_only: bool = False) -> int:
        q = "SELECT COUNT(*) FROM items WHERE data_source_id=?"
        if active_only:
            q += " AND is_active=1"
        row = self.conn.execute(q, (str(data_source_id),)).fetchone()
        return int(row[0]) if row else 0

    # -----------------
    # run events
    # -----------------

    def add_run_event(self, ev: RunEvent) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO run_events(created_at, customer_id, job_type, job_id, run_id, data_source_id,
                                   level, stage, event_code, message, meta_json)
            VALUES(?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                ev.created_at, ev.customer_id, ev.job_type, ev.job_id, ev.run_id, ev.data_source_id,
                ev.level, ev.stage, ev.event_code, ev.message,
                json.dumps(ev.meta, ensure_ascii=False) if ev.meta else None,
            ),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def list_run_events(self, *, run_id: Optional[str] = None, limit: int = 200) -> list[dict[str, Any]]:
        if run_id:
            rows = self.conn.execute(
                "SELECT * FROM run_events WHERE run_id=? ORDER BY eid ASC LIMIT ?", (str(run_id), int(limit)),
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM run_events ORDER BY eid DESC LIMIT ?", (int(limit),)).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["meta"] = self._json_or_none(d.pop("meta_json", None)) or {}
            out.append(d)
        return out


class SqliteEventSink:
    """EventSink в таблицу run_events того же хранилища."""

    def __init__(self, store: CrawlStore) -> None:
        self.store = store

    def emit(self, event: RunEvent) -> None:
        self.store.add_run_event(event)
