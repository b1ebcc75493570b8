from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

if TYPE_CHECKING:
    import psycopg


class Database:
    """Process-wide Postgres handle shared by the store, queue and leases.

    Holds one connection and serialises transactions on it. Build it once at
    process start and pass it to every component.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for Database.")
        self.database_url = database_url
        self._conn: "psycopg.Connection | None" = None
        self._lock = threading.RLock()

    def _connection(self) -> "psycopg.Connection":
        import psycopg

        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(self.database_url, autocommit=True)
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator["psycopg.Cursor"]:
        with self._lock:
            conn = self._connection()
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur

    def ensure_schema(self) -> None:
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self.transaction() as cur:
            cur.execute(schema_sql)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None
