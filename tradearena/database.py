"""DuckDB connection management, transactions and table initialization."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import duckdb

from tradearena.config import settings
from tradearena.utils.logger import logger


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Owns the single DuckDB connection used by the trading core.

    All statements go through one re-entrant lock, so a fill transaction and
    an order submission arriving from the HTTP layer never interleave on the
    shared connection.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = str(path or settings.DB_PATH)
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> duckdb.DuckDBPyConnection:
        """Open the connection and create tables on first call."""
        with self._lock:
            if self._conn is None:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                logger.info("Opening DuckDB at %s", self.path)
                self._conn = duckdb.connect(self.path)
                _init_tables(self._conn)
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Closed DuckDB at %s", self.path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: list | None = None) -> None:
        """Run a statement in autocommit mode, discarding any result."""
        with self._lock:
            self.connect().execute(sql, params or [])

    def fetchone(self, sql: str, params: list | None = None) -> tuple | None:
        with self._lock:
            return self.connect().execute(sql, params or []).fetchone()

    def fetchall(self, sql: str, params: list | None = None) -> list[tuple]:
        with self._lock:
            return self.connect().execute(sql, params or []).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield the connection inside BEGIN/COMMIT; roll back on any exception."""
        with self._lock:
            conn = self.connect()
            conn.begin()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()


def _init_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create tables if they don't exist."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS order_seq START 1;")
    conn.execute("CREATE SEQUENCE IF NOT EXISTS tick_seq START 1;")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id            VARCHAR PRIMARY KEY,
            seq           BIGINT NOT NULL DEFAULT nextval('order_seq'),
            user_id       VARCHAR NOT NULL,
            symbol        VARCHAR NOT NULL,
            side          VARCHAR NOT NULL,
            order_type    VARCHAR NOT NULL,
            qty           INTEGER NOT NULL,
            limit_price   DECIMAL(20, 6),
            status        VARCHAR NOT NULL DEFAULT 'open',
            created_at    TIMESTAMP NOT NULL,
            filled_at     TIMESTAMP,
            cancelled_at  TIMESTAMP
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS portfolios (
            user_id     VARCHAR PRIMARY KEY,
            cash        DECIMAL(20, 6) NOT NULL,
            created_at  TIMESTAMP NOT NULL,
            updated_at  TIMESTAMP NOT NULL
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS positions (
            user_id       VARCHAR NOT NULL,
            symbol        VARCHAR NOT NULL,
            shares        BIGINT NOT NULL,
            avg_cost      DECIMAL(20, 6) NOT NULL,
            opened_at     TIMESTAMP NOT NULL,
            last_updated  TIMESTAMP NOT NULL,
            PRIMARY KEY (user_id, symbol)
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS trades (
            id           VARCHAR PRIMARY KEY,
            order_id     VARCHAR NOT NULL,
            symbol       VARCHAR NOT NULL,
            price        DECIMAL(20, 6) NOT NULL,
            qty          INTEGER NOT NULL,
            buyer_id     VARCHAR,
            seller_id    VARCHAR,
            executed_at  TIMESTAMP NOT NULL
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS ticks (
            seq     BIGINT NOT NULL DEFAULT nextval('tick_seq'),
            symbol  VARCHAR NOT NULL,
            price   DECIMAL(20, 6) NOT NULL,
            volume  BIGINT DEFAULT 0,
            ts      TIMESTAMP NOT NULL
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            user_id     VARCHAR PRIMARY KEY,
            xp          BIGINT NOT NULL DEFAULT 0,
            stats       VARCHAR NOT NULL DEFAULT '{}',
            updated_at  TIMESTAMP NOT NULL
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS engine_events (
            id          VARCHAR PRIMARY KEY,
            timestamp   TIMESTAMP NOT NULL,
            event_type  VARCHAR NOT NULL,
            order_id    VARCHAR,
            user_id     VARCHAR,
            symbol      VARCHAR,
            detail      VARCHAR DEFAULT '',
            metadata    VARCHAR DEFAULT '{}',
            status      VARCHAR DEFAULT 'success'
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS scheduler_runs (
            id            VARCHAR PRIMARY KEY,
            job_name      VARCHAR NOT NULL,
            started_at    TIMESTAMP NOT NULL,
            completed_at  TIMESTAMP,
            status        VARCHAR DEFAULT 'running',
            summary       VARCHAR DEFAULT '',
            error         VARCHAR DEFAULT ''
        );
    """)

    logger.info("DuckDB tables initialized")

    # Databases created by earlier builds predate the fill price column
    _migrate_columns(conn)


def _migrate_columns(conn: duckdb.DuckDBPyConnection) -> None:
    """Add missing columns to existing tables (safe for fresh DBs too)."""
    existing = {
        (r[0], r[1])
        for r in conn.execute(
            "SELECT table_name, column_name FROM information_schema.columns"
        ).fetchall()
    }

    def _add_col(table: str, col: str, dtype: str) -> None:
        if (table, col) in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {dtype}")
        logger.info("Migration: added %s.%s (%s)", table, col, dtype)

    _add_col("orders", "fill_price", "DECIMAL(20, 6)")
