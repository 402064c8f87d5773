from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteReadMarkerStore:
    """Durable last-read markers backed by SQLite."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._configure()
        self._apply_migrations()

    def close(self) -> None:
        self._conn.close()

    def advance(self, user_id: str, channel_id: str, read_at_ms: int) -> int:
        if read_at_ms < 0:
            raise ValueError("read_at_ms must be non-negative")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO read_markers (user_id, channel_id, last_read_ms)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, channel_id) DO UPDATE SET last_read_ms = CASE
                    WHEN excluded.last_read_ms > read_markers.last_read_ms THEN excluded.last_read_ms
                    ELSE read_markers.last_read_ms
                END
                """,
                (user_id, channel_id, read_at_ms),
            )
            row = self._conn.execute(
                "SELECT last_read_ms FROM read_markers WHERE user_id=? AND channel_id=?",
                (user_id, channel_id),
            ).fetchone()
        return int(row[0]) if row else read_at_ms

    def last_read(self, user_id: str, channel_id: str) -> int | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_read_ms FROM read_markers WHERE user_id=? AND channel_id=?",
                (user_id, channel_id),
            ).fetchone()
        return int(row[0]) if row else None

    def list_markers(self, user_id: str) -> list[tuple[str, int]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT channel_id, last_read_ms FROM read_markers WHERE user_id=? ORDER BY channel_id ASC",
                (user_id,),
            ).fetchall()
        return [(row[0], int(row[1])) for row in rows]

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS read_markers (
                    user_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    last_read_ms INTEGER NOT NULL,
                    PRIMARY KEY (user_id, channel_id)
                )
                """
            )
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")
