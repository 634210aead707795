"""Per-thread SQLite connections for the API and the ingestion workers."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

SCHEMA_FILE = Path(__file__).with_name("schema.sql")

CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA temp_store=MEMORY;",
    "PRAGMA busy_timeout=30000;",
)


class SQLiteDatabase:
    """Hands every thread its own sqlite3 connection to one database file.

    WAL journaling lets an ingestion thread write chunks while request
    handlers keep reading; ``busy_timeout`` absorbs short writer contention.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout
        self._local = threading.local()
        self._registry_lock = threading.Lock()
        self._opened: list[sqlite3.Connection] = []

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        for pragma in CONNECTION_PRAGMAS:
            conn.execute(pragma)
        with self._registry_lock:
            self._opened.append(conn)
        return conn

    def connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._local.conn = self._open()
        return conn

    def close(self) -> None:
        """Close every connection handed out so far, from any thread."""
        with self._registry_lock:
            opened, self._opened = self._opened, []
        for conn in opened:
            conn.close()
        self._local = threading.local()

    def commit(self) -> None:
        self.connect().commit()

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Cursor:
        return self.connect().execute(sql, params or ())

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> sqlite3.Cursor:
        return self.connect().executemany(sql, rows)

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Row | None:
        return self.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run a block of statements atomically on this thread's connection."""
        conn = self.connect()
        cursor = conn.cursor()
        try:
            yield cursor
        except Exception:
            conn.rollback()
            raise
        else:
            conn.commit()
        finally:
            cursor.close()

    def ensure_schema(self, schema_sql: str | None = None) -> None:
        script = schema_sql if schema_sql is not None else SCHEMA_FILE.read_text(encoding="utf-8")
        self.connect().executescript(script)


__all__ = ["SQLiteDatabase"]
