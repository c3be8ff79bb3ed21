"""Database manager: connection pooling, schema, thread safety."""

import random
import sqlite3
import threading
import time
import uuid
from typing import Any, List, Sequence, Tuple

from github_guard.utils.logger import get_logger

SCHEMA = [
    # Webhook delivery ids seen within the retention window
    """CREATE TABLE IF NOT EXISTS webhook_deliveries (
        delivery_id TEXT PRIMARY KEY,
        first_seen_at REAL NOT NULL
    );""",
    "CREATE INDEX IF NOT EXISTS idx_deliveries_first_seen " "ON webhook_deliveries(first_seen_at);",
]

PRAGMAS = [
    # WAL lets readers proceed while one writer commits
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA cache_size=10000",
    "PRAGMA temp_store=memory",
    "PRAGMA busy_timeout=5000",
]


class DatabaseManager:
    """Manages SQLite database operations with thread safety and connection pooling.

    ``":memory:"`` maps to a private shared-cache in-memory database so every
    pooled connection sees the same tables.
    """

    def __init__(self, database_path: str, max_pool_size: int = 5):
        self.logger = get_logger("database.manager")
        if database_path == ":memory:":
            self.database_path = f"file:github_guard_{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._use_uri = True
        else:
            self.database_path = database_path
            self._use_uri = database_path.startswith("file:")
        self._lock = threading.Lock()
        self._pool: List[sqlite3.Connection] = []
        self._max_pool_size = max_pool_size
        self._closed = False
        self._initialize_connections()
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path, check_same_thread=False, uri=self._use_uri, timeout=5.0)
        for pragma in PRAGMAS:
            conn.execute(pragma)
        return conn

    def _initialize_connections(self):
        for _ in range(self._max_pool_size):
            self._pool.append(self._connect())

    def _initialize_schema(self):
        conn = self.get_connection()
        try:
            cur = conn.cursor()
            for stmt in SCHEMA:
                cur.execute(stmt)
            conn.commit()
        finally:
            self.return_connection(conn)

    def get_connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._pool:
                return self._pool.pop()
        return self._connect()

    def return_connection(self, conn: sqlite3.Connection):
        with self._lock:
            if not self._closed and len(self._pool) < self._max_pool_size:
                self._pool.append(conn)
                return
        conn.close()

    def _with_retries(self, work, retries: int, delay: float):
        for attempt in range(retries):
            conn = self.get_connection()
            try:
                return work(conn)
            except sqlite3.Error as e:
                # Never pool a connection with an open transaction
                conn.rollback()
                locked = isinstance(e, sqlite3.OperationalError) and "locked" in str(e).lower()
                if locked and attempt < retries - 1:
                    # Exponential backoff with jitter to avoid thundering herd
                    backoff = delay * (2**attempt) + random.uniform(0, 0.1)
                    time.sleep(min(backoff, 1.0))
                    continue
                raise
            finally:
                self.return_connection(conn)
        return None

    def execute_query(self, query: str, params: tuple = (), retries: int = 10, delay: float = 0.05) -> List[Any]:
        def work(conn):
            return conn.execute(query, params).fetchall()

        return self._with_retries(work, retries, delay) or []

    def execute_update(self, query: str, params: tuple = (), retries: int = 10, delay: float = 0.05) -> int:
        def work(conn):
            cur = conn.execute(query, params)
            conn.commit()
            return cur.rowcount

        return self._with_retries(work, retries, delay) or 0

    def execute_transaction(
        self, statements: Sequence[Tuple[str, tuple]], retries: int = 10, delay: float = 0.05
    ) -> List[int]:
        """Run several statements in one transaction on one connection.

        Returns:
            The rowcount of each statement, in order
        """

        def work(conn):
            counts = []
            for query, params in statements:
                counts.append(conn.execute(query, params).rowcount)
            conn.commit()
            return counts

        return self._with_retries(work, retries, delay) or []

    def close(self):
        """Close all pooled database connections."""
        with self._lock:
            self._closed = True
            pool, self._pool = self._pool, []
        for conn in pool:
            try:
                conn.close()
            except sqlite3.Error as e:
                self.logger.debug(f"Error closing connection: {e}")

    def __del__(self):
        if getattr(self, "_pool", None) is not None:
            self.close()
