# ingest/app/db.py
import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import asyncpg

from .errors import StoreQueryFailed, StoreUnavailable, StoreWriteFailed
from .query import DEFAULT_TABLE, RangeQuery

logger = logging.getLogger(__name__)

_db_pool: Optional[asyncpg.pool.Pool] = None

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FieldValue = Union[int, float, str]

SCHEMA_STATEMENTS = (
    "CREATE EXTENSION IF NOT EXISTS timescaledb",
    f"""
    CREATE TABLE IF NOT EXISTS {DEFAULT_TABLE} (
        time        TIMESTAMPTZ NOT NULL,
        measurement TEXT        NOT NULL,
        tags        JSONB       NOT NULL,
        field       TEXT        NOT NULL,
        value       DOUBLE PRECISION,
        value_text  TEXT
    )
    """,
    f"SELECT create_hypertable('{DEFAULT_TABLE}', 'time', if_not_exists => TRUE)",
    f"""
    CREATE INDEX IF NOT EXISTS {DEFAULT_TABLE}_host_idx
        ON {DEFAULT_TABLE} (measurement, (tags->>'host_id'), time DESC)
    """,
)

INSERT_SQL = (
    f"INSERT INTO {DEFAULT_TABLE}(time, measurement, tags, field, value, value_text) "
    "VALUES($1,$2,$3,$4,$5,$6)"
)


@dataclass
class Point:
    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, FieldValue]
    time: datetime


@dataclass
class Record:
    """One row of a query result: a group's tags and the fields sharing ``time``."""

    time: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def point_rows(point: Point) -> List[Tuple]:
    """Split a point into one row per field, numbers and strings in separate columns."""
    rows = []
    for name, value in point.fields.items():
        if _is_number(value):
            rows.append((point.time, point.measurement, point.tags, name, float(value), None))
        else:
            rows.append((point.time, point.measurement, point.tags, name, None, str(value)))
    return rows


def pivot(query: RangeQuery, rows: Iterable[Tuple[datetime, Dict[str, str], str, Any]]) -> List[Record]:
    """Merge (time, tags, field, value) rows into one record per (group, time)."""
    merged: Dict[Tuple, Record] = {}
    for time, tags, name, value in rows:
        key = (query.group_key(tags), time)
        record = merged.get(key)
        if record is None:
            record = merged[key] = Record(time=time, tags=dict(tags))
        record.fields[name] = value
    return sorted(merged.values(), key=lambda r: r.time)


def window_start(time: datetime, width: timedelta) -> datetime:
    return EPOCH + ((time - EPOCH) // width) * width


class Store:
    """Point write and range-query primitives.

    Implementations must be safe for concurrent use and raise only the
    ``Store*`` errors from ``errors``.
    """

    async def write(self, point: Point, *, timeout: Optional[float] = None) -> None:
        await self.write_many([point], timeout=timeout)

    async def write_many(self, points: List[Point], *, timeout: Optional[float] = None) -> None:
        raise NotImplementedError

    async def query(self, query: RangeQuery, *, timeout: Optional[float] = None) -> List[Record]:
        raise NotImplementedError

    async def ping(self, *, timeout: Optional[float] = None) -> None:
        return None

    async def close(self) -> None:
        return None


class TimescaleStore(Store):
    """Store backed by a TimescaleDB hypertable with one row per point field."""

    def __init__(self, pool: asyncpg.pool.Pool):
        self.pool = pool

    async def ping(self, *, timeout: Optional[float] = None) -> None:
        try:
            async with self.pool.acquire(timeout=timeout) as conn:
                await conn.fetchval("SELECT 1", timeout=timeout)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreUnavailable(f"timescaledb health check failed: {e}") from e

    async def write_many(self, points: List[Point], *, timeout: Optional[float] = None) -> None:
        rows = [row for p in points for row in point_rows(p)]
        if not rows:
            return
        try:
            async with self.pool.acquire(timeout=timeout) as conn:
                async with conn.transaction():
                    await conn.executemany(INSERT_SQL, rows, timeout=timeout)
        except (asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreWriteFailed(f"insert of {len(rows)} rows failed: {e!r}") from e
        except OSError as e:
            raise StoreUnavailable(f"connection to timescaledb failed: {e}") from e

    async def query(self, query: RangeQuery, *, timeout: Optional[float] = None) -> List[Record]:
        sql, params = query.to_sql()
        logger.debug("query: %s params=%s", sql, params)
        try:
            async with self.pool.acquire(timeout=timeout) as conn:
                rows = await conn.fetch(sql, *params, timeout=timeout)
        except (asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreQueryFailed(f"query on {query.measurement} failed: {e!r}") from e
        except OSError as e:
            raise StoreUnavailable(f"connection to timescaledb failed: {e}") from e

        if query.window is not None:
            return pivot(query, ((r["time"], {}, r["field"], r["value"]) for r in rows))
        return pivot(query, (
            (r["time"], r["tags"], r["field"], r["value"] if r["value"] is not None else r["value_text"])
            for r in rows
        ))


class MemoryStore(Store):
    """In-process store with the same query semantics, for development and tests."""

    def __init__(self):
        self._rows: List[Tuple[datetime, str, Dict[str, str], str, Any]] = []
        self._lock = threading.Lock()

    async def write_many(self, points: List[Point], *, timeout: Optional[float] = None) -> None:
        with self._lock:
            for p in points:
                for time, measurement, tags, name, value, text in point_rows(p):
                    self._rows.append((time, measurement, dict(tags), name, value if value is not None else text))

    async def query(self, query: RangeQuery, *, timeout: Optional[float] = None) -> List[Record]:
        with self._lock:
            rows = [r for r in self._rows if query.matches(r[1], r[0], r[2], r[3])]

        if query.window is not None:
            buckets: Dict[Tuple[datetime, str], List[float]] = {}
            for time, _, _, name, value in rows:
                if _is_number(value):
                    buckets.setdefault((window_start(time, query.window), name), []).append(value)
            return pivot(query, (
                (start, {}, name, sum(values) / len(values))
                for (start, name), values in sorted(buckets.items())
            ))

        if query.reducer == "last":
            latest: Dict[Tuple, Tuple] = {}
            for time, _, tags, name, value in rows:
                key = (query.group_key(tags), name)
                if key not in latest or time >= latest[key][0]:
                    latest[key] = (time, tags, name, value)
            return pivot(query, latest.values())

        return pivot(query, ((time, tags, name, value) for time, _, tags, name, value in rows))


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def init_db_pool(dsn: str, min_size: int = 1, max_size: int = 10):
    global _db_pool
    if _db_pool is None:
        _db_pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size, init=_init_connection)
    return _db_pool


async def ensure_schema(pool: asyncpg.pool.Pool):
    async with pool.acquire() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)


async def close_db_pool():
    global _db_pool
    if _db_pool is not None:
        await _db_pool.close()
        _db_pool = None
