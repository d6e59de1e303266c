# ingest/app/query.py
"""
RangeQuery - typed description of a time-series read

A query names one measurement and a time range, narrows it with tag equality
predicates and a field list, then either keeps the latest value per group
(``last``) or downsamples into fixed windows (``aggregate_window``). Stores
evaluate it; ``to_sql`` renders it for the TimescaleDB store with every value
bound as a parameter.

Usage:
    query = (RangeQuery("process_metrics", now - timedelta(seconds=15))
        .where_tag("host_id", host_id)
        .select("cpu_percent")
        .group_by("host_id", "pid", "name")
        .last()
    )
    sql, params = query.to_sql()
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
EPOCH_ORIGIN = "TIMESTAMPTZ '1970-01-01 00:00:00+00'"
AGGREGATES = {"mean": "avg"}
DEFAULT_TABLE = "metric_points"


def _check_identifier(kind: str, value: str) -> str:
    if not IDENTIFIER.match(value or ""):
        raise ValueError(f"invalid {kind}: {value!r}")
    return value


@dataclass
class RangeQuery:
    """
    Attributes:
        measurement: Measurement name (e.g. "system_metrics")
        start: Inclusive lower time bound
        stop: Exclusive upper time bound (None for open-ended)
        tag_filters: Tag equality predicates
        field_names: Fields to read (None for all)
        group_keys: Tags forming the group key for ``last`` (None for the full tag set)
        reducer: "last" or None
        window: Window width for ``aggregate_window``
        window_fn: Aggregate applied per window
    """

    measurement: str
    start: datetime
    stop: Optional[datetime] = None
    tag_filters: Dict[str, str] = field(default_factory=dict)
    field_names: Optional[List[str]] = None
    group_keys: Optional[Tuple[str, ...]] = None
    reducer: Optional[str] = None
    window: Optional[timedelta] = None
    window_fn: str = "mean"

    def __post_init__(self):
        _check_identifier("measurement", self.measurement)

    def where_tag(self, key: str, value: str) -> "RangeQuery":
        self.tag_filters[_check_identifier("tag key", key)] = str(value)
        return self

    def select(self, *names: str) -> "RangeQuery":
        self.field_names = [_check_identifier("field", n) for n in names] or None
        return self

    def group_by(self, *keys: str) -> "RangeQuery":
        if self.window is not None:
            raise ValueError("group_by cannot be combined with aggregate_window")
        self.group_keys = tuple(_check_identifier("tag key", k) for k in keys)
        return self

    def last(self) -> "RangeQuery":
        if self.window is not None:
            raise ValueError("last cannot be combined with aggregate_window")
        self.reducer = "last"
        return self

    def aggregate_window(self, every: timedelta, fn: str = "mean") -> "RangeQuery":
        """
        Downsample into epoch-aligned windows of width ``every``.

        Windows without samples produce no record; a record's time is its
        window start.
        """
        if every.total_seconds() <= 0:
            raise ValueError("window width must be positive")
        if fn not in AGGREGATES:
            raise ValueError(f"unsupported aggregate: {fn}")
        if self.reducer is not None or self.group_keys is not None:
            raise ValueError("aggregate_window cannot be combined with last or group_by")
        self.window = every
        self.window_fn = fn
        return self

    def group_key(self, tags: Dict[str, str]) -> Tuple:
        """Group identity of a row with ``tags`` under this query."""
        if self.group_keys is None:
            return tuple(sorted(tags.items()))
        return tuple(tags.get(k) for k in self.group_keys)

    def matches(self, measurement: str, time: datetime, tags: Dict[str, str], field_name: str) -> bool:
        if measurement != self.measurement or time < self.start:
            return False
        if self.stop is not None and time >= self.stop:
            return False
        if self.field_names is not None and field_name not in self.field_names:
            return False
        return all(tags.get(k) == v for k, v in self.tag_filters.items())

    def to_sql(self, table: str = DEFAULT_TABLE) -> Tuple[str, List[Any]]:
        """
        Render PostgreSQL/TimescaleDB SQL with $n placeholders

        Returns:
            Tuple of (sql_query, positional_parameters)
        """
        _check_identifier("table", table)
        params: List[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        where = [f"measurement = {bind(self.measurement)}", f"time >= {bind(self.start)}"]
        if self.stop is not None:
            where.append(f"time < {bind(self.stop)}")
        for key, value in self.tag_filters.items():
            where.append(f"tags ->> {bind(key)}::text = {bind(value)}")
        if self.field_names is not None:
            where.append(f"field = ANY({bind(self.field_names)}::text[])")

        if self.window is not None:
            where.append("value IS NOT NULL")
            bucket = f"time_bucket({bind(self.window)}::interval, time, {EPOCH_ORIGIN})"
            sql = (
                f"SELECT {bucket} AS time, field, {AGGREGATES[self.window_fn]}(value) AS value "
                f"FROM {table} WHERE {' AND '.join(where)} "
                f"GROUP BY 1, field ORDER BY 1, field"
            )
            return sql, params

        columns = "time, tags, field, value, value_text"
        if self.reducer == "last":
            if self.group_keys is None:
                group = ["tags"]
            else:
                group = [f"tags ->> {bind(k)}::text" for k in self.group_keys]
            distinct = ", ".join(group + ["field"])
            sql = (
                f"SELECT DISTINCT ON ({distinct}) {columns} "
                f"FROM {table} WHERE {' AND '.join(where)} "
                f"ORDER BY {distinct}, time DESC"
            )
            return sql, params

        sql = f"SELECT {columns} FROM {table} WHERE {' AND '.join(where)} ORDER BY time"
        return sql, params
