# ingest/app/dashboard.py
"""Read side of the pipeline: host overview, host details and metric history.

Every answer is computed from ``Store.query`` results at request time; nothing
here holds state between requests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .db import Record, Store
from .deadline import Deadline
from .errors import HostNotFound, InvalidMetric, StoreQueryFailed, StoreUnavailable
from .ingestion import DISK_MEASUREMENT, PROCESS_MEASUREMENT, SYSTEM_MEASUREMENT
from .query import RangeQuery
from .schemas import (
    CPUDetails,
    HostDetails,
    HostOverview,
    MemoryDetails,
    MetricPoint,
    OSDetails,
    ProcessDetail,
    RootDiskDetails,
)
from .status import StatusThresholds, derive_status

logger = logging.getLogger(__name__)

ROOT_PATH = "/"
HISTORY_METRICS = frozenset({
    "cpu_usage_percent",
    "mem_usage_percent",
    "net_upload_bytes_sec",
    "net_download_bytes_sec",
})
OVERVIEW_FIELDS = (
    "cpu_usage_percent",
    "mem_usage_percent",
    "net_upload_bytes_sec",
    "net_download_bytes_sec",
)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _float(fields: Dict[str, Any], key: str) -> float:
    value = fields.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _int(fields: Dict[str, Any], key: str) -> int:
    return int(_float(fields, key))


def _str(fields: Dict[str, Any], key: str) -> str:
    value = fields.get(key)
    return value if isinstance(value, str) else ""


class ProcessKey(NamedTuple):
    pid: int
    name: str


class ProcessTable:
    """Per-process partial records merged from separately queried fields.

    Each leg of the join carries a subset of the fields. ``merge`` writes the
    fields present in that leg onto the entry for (pid, name), creating the
    entry with zeroed fields when the key is new; the last leg to carry a
    field wins.
    """

    def __init__(self):
        self._rows: Dict[ProcessKey, ProcessDetail] = {}

    def __len__(self):
        return len(self._rows)

    def merge(self, pid: int, name: str, **fields) -> ProcessDetail:
        key = ProcessKey(pid, name)
        entry = self._rows.get(key)
        if entry is None:
            entry = self._rows[key] = ProcessDetail(pid=pid, name=name)
        for attr, value in fields.items():
            setattr(entry, attr, value)
        return entry

    def sorted(self) -> List[ProcessDetail]:
        return sorted(self._rows.values(), key=lambda p: (p.pid, p.name))


def _record_pid(record: Record) -> Optional[int]:
    try:
        return int(record.tags.get("pid", ""))
    except ValueError:
        logger.warning("process record with non-numeric pid tag %r", record.tags.get("pid"))
        return None


class DashboardService:
    def __init__(
        self,
        store: Store,
        active_lookback: timedelta = timedelta(seconds=30),
        details_lookback: timedelta = timedelta(seconds=15),
        thresholds: Optional[StatusThresholds] = None,
        timeout: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.active_lookback = active_lookback
        self.details_lookback = details_lookback
        self.thresholds = thresholds or StatusThresholds(active_window=active_lookback)
        self.timeout = timeout
        self.clock = clock

    async def _query(self, query: RangeQuery, deadline: Deadline) -> List[Record]:
        if deadline.expired:
            raise StoreQueryFailed(f"deadline passed before the query on {query.measurement}")
        return await self.store.query(query, timeout=deadline.remaining())

    async def _optional_query(
        self, query: RangeQuery, deadline: Deadline, what: str, host_id: str = "*"
    ) -> List[Record]:
        """Run a query whose failure only costs optional data."""
        try:
            return await self._query(query, deadline)
        except (StoreQueryFailed, StoreUnavailable) as e:
            logger.error("%s query failed for host %s (%s): %s", what, host_id, query.measurement, e)
            return []

    async def overview(self) -> List[HostOverview]:
        """Latest state of every host seen within the active lookback, by hostname."""
        deadline = Deadline(self.timeout)
        now = self.clock()
        start = now - self.active_lookback

        system_query = (RangeQuery(SYSTEM_MEASUREMENT, start)
            .select(*OVERVIEW_FIELDS)
            .group_by("host_id")
            .last())
        try:
            system_records = await self._query(system_query, deadline)
        except (StoreQueryFailed, StoreUnavailable) as e:
            logger.error("overview query on %s failed: %s", SYSTEM_MEASUREMENT, e)
            raise

        disk_query = (RangeQuery(DISK_MEASUREMENT, start)
            .where_tag("path", ROOT_PATH)
            .select("usage_percent")
            .group_by("host_id")
            .last())
        root_disk: Dict[str, float] = {}
        for rec in await self._optional_query(disk_query, deadline, "root disk"):
            root_disk[rec.tags.get("host_id", "")] = _float(rec.fields, "usage_percent")

        # several records per host means fields last written at different instants
        latest: Dict[str, Record] = {}
        for rec in system_records:
            host_id = rec.tags.get("host_id", "")
            if host_id not in latest or rec.time > latest[host_id].time:
                latest[host_id] = rec

        overviews = []
        for host_id, rec in latest.items():
            cpu = _float(rec.fields, "cpu_usage_percent")
            ram = _float(rec.fields, "mem_usage_percent")
            disk = root_disk.get(host_id, 0.0)
            overviews.append(HostOverview(
                host_id=host_id,
                hostname=rec.tags.get("hostname", ""),
                status=derive_status(rec.time, now, cpu, ram, disk, self.thresholds),
                cpu_usage=cpu,
                ram_usage=ram,
                disk_usage=disk,
                network_upload=_float(rec.fields, "net_upload_bytes_sec"),
                network_download=_float(rec.fields, "net_download_bytes_sec"),
                last_seen=rec.time,
            ))
        overviews.sort(key=lambda o: o.hostname)
        return overviews

    async def details(self, host_id: str) -> HostDetails:
        deadline = Deadline(self.timeout)
        now = self.clock()
        start = now - self.details_lookback

        system_query = (RangeQuery(SYSTEM_MEASUREMENT, start)
            .where_tag("host_id", host_id)
            .group_by("host_id")
            .last())
        try:
            system_records = await self._query(system_query, deadline)
        except (StoreQueryFailed, StoreUnavailable) as e:
            logger.error("details query on %s failed for host %s: %s", SYSTEM_MEASUREMENT, host_id, e)
            raise
        if not system_records:
            logger.warning("no system data found for host_id: %s", host_id)
            raise HostNotFound(f"no system data for host_id {host_id} in the last {self.details_lookback}")
        sysrec = max(system_records, key=lambda r: r.time)
        f = sysrec.fields

        disk = RootDiskDetails(path=ROOT_PATH)
        disk_query = (RangeQuery(DISK_MEASUREMENT, start)
            .where_tag("host_id", host_id)
            .where_tag("path", ROOT_PATH)
            .group_by("host_id", "path")
            .last())
        disk_records = await self._optional_query(disk_query, deadline, "root disk", host_id)
        if disk_records:
            d = max(disk_records, key=lambda r: r.time).fields
            disk = RootDiskDetails(
                path=ROOT_PATH,
                total_gb=_float(d, "total_gb"),
                used_gb=_float(d, "used_gb"),
                free_gb=_float(d, "free_gb"),
                usage_percent=_float(d, "usage_percent"),
            )
        else:
            logger.warning("no root disk data found for host_id: %s", host_id)

        processes = await self._process_list(host_id, start, deadline)

        cpu_usage = _float(f, "cpu_usage_percent")
        ram_usage = _float(f, "mem_usage_percent")
        return HostDetails(
            host_id=host_id,
            hostname=sysrec.tags.get("hostname", ""),
            status=derive_status(sysrec.time, now, cpu_usage, ram_usage, disk.usage_percent, self.thresholds),
            last_seen=sysrec.time,
            uptime_seconds=_int(f, "uptime_seconds"),
            cpu=CPUDetails(cores=_int(f, "cpu_cores"), model_name=_str(f, "cpu_model_name")),
            memory=MemoryDetails(
                total_gb=_float(f, "mem_total_gb"),
                available_gb=_float(f, "mem_available_gb"),
                used_gb=_float(f, "mem_used_gb"),
                usage_percent=ram_usage,
            ),
            disk=disk,
            os=OSDetails(
                name=sysrec.tags.get("os", ""),
                version=_str(f, "os_version"),
                kernel=_str(f, "kernel"),
                kernel_version=_str(f, "kernel_version"),
            ),
            processes=processes,
            cpu_usage=cpu_usage,
            ram_usage=ram_usage,
            network_upload=_float(f, "net_upload_bytes_sec"),
            network_download=_float(f, "net_download_bytes_sec"),
        )

    def _process_query(self, host_id: str, start: datetime, *fields: str) -> RangeQuery:
        return (RangeQuery(PROCESS_MEASUREMENT, start)
            .where_tag("host_id", host_id)
            .select(*fields)
            .group_by("host_id", "pid", "name")
            .last())

    async def _process_list(self, host_id: str, start: datetime, deadline: Deadline) -> List[ProcessDetail]:
        """Rebuild process rows from two field queries joined on (pid, name).

        The memory leg seeds the table; the CPU leg updates matching entries
        and adds processes it alone reports with memory at 0.
        """
        table = ProcessTable()

        mem_query = self._process_query(host_id, start, "mem_percent", "username")
        for rec in await self._optional_query(mem_query, deadline, "process memory", host_id):
            pid = _record_pid(rec)
            if pid is None:
                continue
            table.merge(pid, rec.tags.get("name", ""),
                        memory_percent=_float(rec.fields, "mem_percent"),
                        username=_str(rec.fields, "username"))

        cpu_query = self._process_query(host_id, start, "cpu_percent")
        for rec in await self._optional_query(cpu_query, deadline, "process cpu", host_id):
            pid = _record_pid(rec)
            if pid is None:
                continue
            table.merge(pid, rec.tags.get("name", ""), cpu_percent=_float(rec.fields, "cpu_percent"))

        return table.sorted()

    async def history(
        self,
        host_id: str,
        metric: str,
        range_: timedelta = timedelta(hours=1),
        aggregate: timedelta = timedelta(seconds=30),
    ) -> List[MetricPoint]:
        """Mean of ``metric`` per ``aggregate`` window over the trailing ``range_``.

        Windows without samples are left out rather than zero-filled.
        """
        if metric not in HISTORY_METRICS:
            raise InvalidMetric(f"invalid or non-numeric metric field for history: {metric}")

        deadline = Deadline(self.timeout)
        query = (RangeQuery(SYSTEM_MEASUREMENT, self.clock() - range_)
            .where_tag("host_id", host_id)
            .select(metric)
            .aggregate_window(aggregate, fn="mean"))
        try:
            records = await self._query(query, deadline)
        except (StoreQueryFailed, StoreUnavailable) as e:
            logger.error("history query failed for host %s, metric %s: %s", host_id, metric, e)
            raise

        points = []
        for rec in records:
            value = rec.fields.get(metric)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                logger.warning("unexpected value type for metric %s, host %s: %r", metric, host_id, value)
                continue
            points.append(MetricPoint(timestamp=rec.time, value=float(value)))
        points.sort(key=lambda p: p.timestamp)
        return points
