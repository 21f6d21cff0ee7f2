from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Iterator

from ..models import RecordState, StateKey, format_timestamp, utc_now


logger = logging.getLogger(__name__)


_UPSERT_SQL = """
INSERT INTO record_states(
    record_id, record_key, source_id, query_id,
    summary, status, updated_at, last_notified_at, is_read
)
VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(record_id, source_id, query_id) DO UPDATE SET
    record_key=excluded.record_key,
    summary=excluded.summary,
    status=excluded.status,
    updated_at=excluded.updated_at,
    last_notified_at=CASE
        WHEN excluded.last_notified_at IS NULL THEN record_states.last_notified_at
        WHEN record_states.last_notified_at IS NULL THEN excluded.last_notified_at
        WHEN excluded.last_notified_at > record_states.last_notified_at THEN excluded.last_notified_at
        ELSE record_states.last_notified_at
    END
"""


def _parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_state(row: sqlite3.Row) -> RecordState:
    record_id = row["record_id"]
    source_id = row["source_id"]
    query_id = row["query_id"]
    if not record_id or not source_id or not query_id:
        raise ValueError(f"empty identifier in row: record_id={record_id!r} source_id={source_id!r} query_id={query_id!r}")
    updated_at = _parse_timestamp(row["updated_at"])
    if updated_at is None:
        raise ValueError(f"missing updated_at for record_id={record_id!r}")
    return RecordState(
        record_id=str(record_id),
        key=str(row["record_key"]),
        source_id=str(source_id),
        query_id=str(query_id),
        summary=str(row["summary"] or ""),
        status=str(row["status"] or ""),
        updated_at=updated_at,
        last_notified_at=_parse_timestamp(row["last_notified_at"]),
        is_read=bool(row["is_read"]),
    )


@dataclass(slots=True)
class SqliteStateStore:
    """
    默认状态存储：SQLite

    表设计：
    - record_states：主键 (record_id, source_id, query_id)，重复拉取只做 upsert
    - notify_failures：通知失败留痕（不做队列重试，但保证可追踪）

    并发：所有写操作在同一把锁内以单事务执行，保证同一键的写入串行。
    last_notified_at 只增不减：upsert/mark_notified 都不会把它改小或清空。
    is_read 只由显式的 mark_* 方法修改，upsert 不会覆盖已有行的已读标记。

    sqlite_path 为 ":memory:" 时使用单个共享连接（仅用于测试/临时运行）。
    """

    sqlite_path: str
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _shared_conn: sqlite3.Connection | None = field(default=None, init=False, repr=False)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self.sqlite_path == ":memory:":
                if self._shared_conn is None:
                    self._shared_conn = self._connect()
                with self._shared_conn as conn:
                    yield conn
                return

            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_states (
                    record_id TEXT NOT NULL,
                    record_key TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    query_id TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_notified_at TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (record_id, source_id, query_id)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_record_states_source ON record_states(source_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_record_states_query ON record_states(query_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notify_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    query_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    error TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def get_state(self, key: StateKey) -> RecordState | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM record_states
                WHERE record_id = ? AND source_id = ? AND query_id = ?
                LIMIT 1
                """,
                (key.record_id, key.source_id, key.query_id),
            ).fetchone()
        if row is None:
            return None
        try:
            return _row_to_state(row)
        except (TypeError, ValueError):
            logger.warning(
                "skip malformed state row: record_id=%s source_id=%s query_id=%s",
                key.record_id,
                key.source_id,
                key.query_id,
                exc_info=True,
            )
            return None

    def upsert_state(self, state: RecordState) -> None:
        last_notified = format_timestamp(state.last_notified_at) if state.last_notified_at else None
        with self._transaction() as conn:
            conn.execute(
                _UPSERT_SQL,
                (
                    state.record_id,
                    state.key,
                    state.source_id,
                    state.query_id,
                    state.summary,
                    state.status,
                    format_timestamp(state.updated_at),
                    last_notified,
                    1 if state.is_read else 0,
                ),
            )

    def mark_notified(self, key: StateKey, at: datetime) -> None:
        ts = format_timestamp(at)
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE record_states
                SET last_notified_at = ?
                WHERE record_id = ? AND source_id = ? AND query_id = ?
                  AND (last_notified_at IS NULL OR last_notified_at < ?)
                """,
                (ts, key.record_id, key.source_id, key.query_id, ts),
            )

    def delete_states_for_source(self, source_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM record_states WHERE source_id = ?", (source_id,))
            return cur.rowcount

    def delete_states_for_query(self, source_id: str, query_id: str) -> int:
        # query_id 只在所属 Source 内唯一
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM record_states WHERE source_id = ? AND query_id = ?",
                (source_id, query_id),
            )
            return cur.rowcount

    def list_states(self) -> list[RecordState]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM record_states ORDER BY updated_at DESC").fetchall()

        states: list[RecordState] = []
        for row in rows:
            try:
                states.append(_row_to_state(row))
            except (TypeError, ValueError):
                logger.warning("skip malformed state row: record_id=%r", row["record_id"], exc_info=True)
        return states

    def mark_read(self, key: StateKey) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE record_states SET is_read = 1 WHERE record_id = ? AND source_id = ? AND query_id = ?",
                (key.record_id, key.source_id, key.query_id),
            )

    def mark_unread(self, key: StateKey) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE record_states SET is_read = 0 WHERE record_id = ? AND source_id = ? AND query_id = ?",
                (key.record_id, key.source_id, key.query_id),
            )

    def mark_many_read(self, record_ids: Iterable[str]) -> int:
        ids = sorted({str(x) for x in record_ids})
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as conn:
            cur = conn.execute(f"UPDATE record_states SET is_read = 1 WHERE record_id IN ({placeholders})", ids)
            return cur.rowcount

    def mark_all_read(self) -> int:
        with self._transaction() as conn:
            cur = conn.execute("UPDATE record_states SET is_read = 1 WHERE is_read = 0")
            return cur.rowcount

    def record_notify_failure(self, *, key: StateKey, channel: str, error: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO notify_failures(record_id, source_id, query_id, channel, error, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (key.record_id, key.source_id, key.query_id, channel, error, format_timestamp(utc_now())),
            )
