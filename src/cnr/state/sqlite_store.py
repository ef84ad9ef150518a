from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterator, Mapping

from ..errors import CursorStoreError


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True, slots=True)
class InboxItem:
    seq: int
    payload: Mapping[str, Any]
    received_at: str


@dataclass(slots=True)
class SqliteStateStore:
    """
    默认状态存储：SQLite

    表设计（最小可用）：
    - cursors：每个 feed_key 的 cursor（同步完成后整体替换）
    - webhook_inbox：入站 webhook 原始 payload，seq 单调递增，供 inbox 型 feed 分页消费
    - dispatch_failures：通知失败留痕（不做队列重试，但保证可追踪）

    sqlite_path 为 ":memory:" 时复用同一个连接，否则每次操作新建连接。
    所有写操作在进程内串行化，配合 SQLite 事务保证 load 不会读到半写入的 cursor。
    """

    sqlite_path: str
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _shared_conn: sqlite3.Connection | None = field(default=None, init=False, repr=False)
    _schema_ready: bool = field(default=False, init=False, repr=False)

    def _connect(self) -> sqlite3.Connection:
        if self.sqlite_path == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._shared_conn.row_factory = sqlite3.Row
            return self._shared_conn
        conn = sqlite3.connect(self.sqlite_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                if conn is not self._shared_conn:
                    conn.close()

    def ensure_schema(self) -> None:
        with self._lock:
            if self._schema_ready:
                return
            with self._transaction() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS cursors (
                        feed_key TEXT PRIMARY KEY,
                        cursor TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS webhook_inbox (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        feed_key TEXT NOT NULL,
                        payload_json TEXT NOT NULL,
                        received_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS dispatch_failures (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        feed_key TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        channel TEXT NOT NULL,
                        error TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
            self._schema_ready = True

    def get_cursor(self, feed_key: str) -> str | None:
        try:
            self.ensure_schema()
            with self._transaction() as conn:
                row = conn.execute("SELECT cursor FROM cursors WHERE feed_key = ?", (feed_key,)).fetchone()
        except sqlite3.Error as e:
            raise CursorStoreError(f"failed to load cursor for {feed_key}: {e}") from e
        if not row:
            return None
        return row["cursor"]

    def set_cursor(self, feed_key: str, cursor: str) -> None:
        try:
            self.ensure_schema()
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO cursors(feed_key, cursor, updated_at)
                    VALUES(?, ?, ?)
                    ON CONFLICT(feed_key) DO UPDATE SET
                        cursor=excluded.cursor,
                        updated_at=excluded.updated_at
                    """,
                    (feed_key, cursor, _utc_now_iso()),
                )
        except sqlite3.Error as e:
            raise CursorStoreError(f"failed to save cursor for {feed_key}: {e}") from e

    def delete_cursor(self, feed_key: str) -> None:
        try:
            self.ensure_schema()
            with self._transaction() as conn:
                conn.execute("DELETE FROM cursors WHERE feed_key = ?", (feed_key,))
        except sqlite3.Error as e:
            raise CursorStoreError(f"failed to reset cursor for {feed_key}: {e}") from e

    def append_inbox(self, feed_key: str, payload: Mapping[str, Any]) -> int:
        self.ensure_schema()
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO webhook_inbox(feed_key, payload_json, received_at)
                VALUES(?, ?, ?)
                """,
                (feed_key, json.dumps(payload, ensure_ascii=False), _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def read_inbox(self, feed_key: str, *, after_seq: int, limit: int) -> list[InboxItem]:
        self.ensure_schema()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT seq, payload_json, received_at FROM webhook_inbox
                WHERE feed_key = ? AND seq > ?
                ORDER BY seq
                LIMIT ?
                """,
                (feed_key, after_seq, limit),
            ).fetchall()
        return [
            InboxItem(seq=int(r["seq"]), payload=json.loads(r["payload_json"]), received_at=r["received_at"])
            for r in rows
        ]

    def record_dispatch_failure(self, *, feed_key: str, subject_id: str, channel: str, error: str) -> None:
        self.ensure_schema()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO dispatch_failures(feed_key, subject_id, channel, error, created_at)
                VALUES(?, ?, ?, ?, ?)
                """,
                (feed_key, subject_id, channel, error, _utc_now_iso()),
            )

    def count_dispatch_failures(self, feed_key: str | None = None) -> int:
        self.ensure_schema()
        with self._transaction() as conn:
            if feed_key is None:
                row = conn.execute("SELECT COUNT(*) FROM dispatch_failures").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM dispatch_failures WHERE feed_key = ?", (feed_key,)).fetchone()
        return int(row[0])


@dataclass(slots=True)
class SqliteCursorStore:
    """单个 feed 的 CursorStore 视图；每个 SyncLoop 注入自己的一份。"""

    state: SqliteStateStore
    feed_key: str

    def load(self) -> str | None:
        return self.state.get_cursor(self.feed_key)

    def save(self, cursor: str) -> None:
        self.state.set_cursor(self.feed_key, cursor)

    def reset(self) -> None:
        self.state.delete_cursor(self.feed_key)
