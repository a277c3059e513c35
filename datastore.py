"""
Storage backends for the Fund Facts pipeline.

The pipeline only ever needs two primitives against its tables:

  1. select_one: filtered read (equality + lower bound), optional ordering,
     at most one row back
  2. upsert:     insert-or-overwrite keyed by the table's primary key

Three implementations share that contract:

  - PostgresStore: psycopg2 connection pool, used in production
  - RedisStore:    one JSON document per primary key
  - MemoryStore:   dict-backed, used by tests and local runs

Blocking client calls run on a worker thread so the request loop is never
pinned by I/O.
"""

import asyncio
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime

import psycopg2
import redis
from psycopg2 import pool, sql
from psycopg2.extras import Json, RealDictCursor

from config import FundFactsConfig, postgres_settings

logger = logging.getLogger("fund_facts.datastore")

FUND_FACTS_TABLE = "fund_facts_llm"
DAILY_BUDGET_TABLE = "fund_facts_daily_budget"
NAV_TABLE = "nav_data"

# Primary key column per table
TABLE_KEYS = {
    FUND_FACTS_TABLE: "fund_id",
    DAILY_BUDGET_TABLE: "date",
    NAV_TABLE: "scheme_code",
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS fund_facts_llm (
    fund_id TEXT PRIMARY KEY,
    as_of_month DATE NOT NULL,
    payload JSONB NOT NULL,
    confidence TEXT NOT NULL CHECK (confidence IN ('high', 'medium', 'low')),
    sources JSONB NOT NULL DEFAULT '[]',
    provenance TEXT NOT NULL DEFAULT 'llm+cited',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_fund_facts_llm_created ON fund_facts_llm (created_at);
CREATE INDEX IF NOT EXISTS idx_fund_facts_llm_conf ON fund_facts_llm (confidence);

CREATE TABLE IF NOT EXISTS fund_facts_daily_budget (
    date DATE PRIMARY KEY,
    call_count INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class DataStoreError(Exception):
    """Raised when the underlying store cannot complete a read or write."""


class DataStore(ABC):
    """Minimal storage contract shared by all backends."""

    @abstractmethod
    async def select_one(
        self,
        table: str,
        *,
        eq: dict,
        gte: dict | None = None,
        order_by: str | None = None,
        descending: bool = True,
    ) -> dict | None:
        """Return the first row matching every filter, or None."""

    @abstractmethod
    async def upsert(self, table: str, row: dict, *, on_conflict: str) -> None:
        """Insert ``row``, overwriting any existing row with the same key."""


def _matches(row: dict, eq: dict, gte: dict | None) -> bool:
    for column, value in eq.items():
        if row.get(column) != value:
            return False
    for column, bound in (gte or {}).items():
        current = row.get(column)
        if current is None or current < bound:
            return False
    return True


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryStore(DataStore):
    """Dict-backed store. Rows are deep-copied in and out."""

    def __init__(self, tables: dict[str, list[dict]] | None = None):
        self._tables: dict[str, dict] = {}
        self._lock = threading.Lock()
        for table, rows in (tables or {}).items():
            key = TABLE_KEYS.get(table, "id")
            for row in rows:
                self._tables.setdefault(table, {})[row[key]] = copy.deepcopy(row)

    def rows(self, table: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._tables.get(table, {}).values()]

    async def select_one(self, table, *, eq, gte=None, order_by=None, descending=True):
        with self._lock:
            candidates = [r for r in self._tables.get(table, {}).values() if _matches(r, eq, gte)]
        if order_by:
            candidates.sort(key=lambda r: r.get(order_by), reverse=descending)
        return copy.deepcopy(candidates[0]) if candidates else None

    async def upsert(self, table, row, *, on_conflict):
        with self._lock:
            self._tables.setdefault(table, {})[row[on_conflict]] = copy.deepcopy(row)


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

_connection_pool: pool.ThreadedConnectionPool | None = None


def get_connection_pool():
    global _connection_pool
    if _connection_pool is None:
        _connection_pool = pool.ThreadedConnectionPool(minconn=1, maxconn=10, **postgres_settings())
    return _connection_pool


@contextmanager
def get_db_connection(db_pool=None):
    """Get connection from pool with automatic return."""
    db_pool = db_pool or get_connection_pool()
    conn = db_pool.getconn()
    try:
        yield conn
    finally:
        db_pool.putconn(conn)


def _adapt(value):
    """Wrap JSON-shaped values so psycopg2 sends them as JSONB."""
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


class PostgresStore(DataStore):
    def __init__(self, db_pool=None):
        self._pool = db_pool

    def _select_one_sync(self, table, eq, gte, order_by, descending):
        clauses = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in eq]
        params = list(eq.values())
        for column, bound in (gte or {}).items():
            clauses.append(sql.SQL("{} >= %s").format(sql.Identifier(column)))
            params.append(bound)

        query = sql.SQL("SELECT * FROM {} WHERE {}").format(
            sql.Identifier(table), sql.SQL(" AND ").join(clauses)
        )
        if order_by:
            direction = sql.SQL("DESC" if descending else "ASC")
            query += sql.SQL(" ORDER BY {} {}").format(sql.Identifier(order_by), direction)
        query += sql.SQL(" LIMIT 1")

        with get_db_connection(self._pool) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return dict(row) if row is not None else None

    def _upsert_sync(self, table, row, on_conflict):
        columns = list(row)
        updates = [c for c in columns if c != on_conflict]
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) "
            "ON CONFLICT ({key}) DO UPDATE SET {updates}"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            key=sql.Identifier(on_conflict),
            updates=sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
            ),
        )
        with get_db_connection(self._pool) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(query, [_adapt(row[c]) for c in columns])
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def select_one(self, table, *, eq, gte=None, order_by=None, descending=True):
        try:
            return await asyncio.to_thread(self._select_one_sync, table, eq, gte, order_by, descending)
        except psycopg2.Error as e:
            raise DataStoreError(f"select from {table} failed: {e}") from e

    async def upsert(self, table, row, *, on_conflict):
        try:
            await asyncio.to_thread(self._upsert_sync, table, row, on_conflict)
        except psycopg2.Error as e:
            raise DataStoreError(f"upsert into {table} failed: {e}") from e


def setup_schema(db_pool=None):
    """Create the fund facts tables if they do not exist."""
    with get_db_connection(db_pool) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

REDIS_PREFIX = "fund_facts:v1:"


def _to_json_value(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class RedisStore(DataStore):
    """One JSON document per (table, primary key); other filters applied locally.

    Datetimes are stored as ISO-8601 strings, so gte bounds are compared in
    the same form. Callers must use timezone-aware UTC values throughout.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    @staticmethod
    def _key(table: str, value) -> str:
        return f"{REDIS_PREFIX}{table}:{_to_json_value(value)}"

    async def select_one(self, table, *, eq, gte=None, order_by=None, descending=True):
        key_column = TABLE_KEYS.get(table)
        if key_column not in eq:
            raise DataStoreError(f"RedisStore lookups on {table} require an equality filter on {key_column}")
        try:
            raw = await asyncio.to_thread(self._client.get, self._key(table, eq[key_column]))
        except redis.RedisError as e:
            raise DataStoreError(f"select from {table} failed: {e}") from e
        if raw is None:
            return None
        row = json.loads(raw)
        eq_json = {k: _to_json_value(v) for k, v in eq.items()}
        gte_json = {k: _to_json_value(v) for k, v in (gte or {}).items()}
        return row if _matches(row, eq_json, gte_json) else None

    async def upsert(self, table, row, *, on_conflict):
        document = json.dumps({k: _to_json_value(v) for k, v in row.items()})
        try:
            await asyncio.to_thread(self._client.set, self._key(table, row[on_conflict]), document)
        except redis.RedisError as e:
            raise DataStoreError(f"upsert into {table} failed: {e}") from e


def create_store(config: FundFactsConfig) -> DataStore:
    """Build the backend named by ``config.store_backend``."""
    if config.store_backend == "memory":
        return MemoryStore()
    if config.store_backend == "redis":
        return RedisStore.from_url(config.redis_url)
    return PostgresStore()
