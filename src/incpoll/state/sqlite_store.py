from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class SqliteStateStore:
    """
    默认状态存储：SQLite

    表设计：
    - cursors：每个 source_key 的 cursor（JSON 字符串，见 models.encode_cursor）
    - seen_emissions：fingerprint 去重集合
    - cycle_failures：整轮失败 / 子资源失败留痕（sub_resource 为空表示整轮）
    """

    sqlite_path: str

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    source_key TEXT PRIMARY KEY,
                    cursor TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS seen_emissions (
                    fingerprint TEXT PRIMARY KEY,
                    first_seen_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cycle_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_key TEXT NOT NULL,
                    sub_resource TEXT,
                    error TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def get_cursor(self, source_key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT cursor FROM cursors WHERE source_key = ?", (source_key,)).fetchone()
            if not row:
                return None
            return row["cursor"]

    def set_cursor(self, source_key: str, cursor: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cursors(source_key, cursor, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(source_key) DO UPDATE SET
                    cursor=excluded.cursor,
                    updated_at=excluded.updated_at
                """,
                (source_key, cursor, _utc_now_iso()),
            )

    def has_seen(self, fingerprint: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM seen_emissions WHERE fingerprint = ? LIMIT 1",
                (fingerprint,),
            ).fetchone()
            return row is not None

    def mark_seen(self, fingerprint: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO seen_emissions(fingerprint, first_seen_at)
                VALUES(?, ?)
                """,
                (fingerprint, _utc_now_iso()),
            )

    def record_failure(self, *, source_key: str, sub_resource: str | None, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cycle_failures(source_key, sub_resource, error, created_at)
                VALUES(?, ?, ?, ?)
                """,
                (source_key, sub_resource, error, _utc_now_iso()),
            )

    def list_failures(self, source_key: str | None = None) -> list[dict[str, str | None]]:
        sql = "SELECT source_key, sub_resource, error, created_at FROM cycle_failures"
        args: tuple[str, ...] = ()
        if source_key is not None:
            sql += " WHERE source_key = ?"
            args = (source_key,)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", args).fetchall()
        return [dict(r) for r in rows]
