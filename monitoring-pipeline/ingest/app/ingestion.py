# ingest/app/ingestion.py
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from .db import Point, Store
from .deadline import Deadline
from .errors import MalformedPayload, MissingHostID, MissingTimestamp, StoreUnavailable, StoreWriteFailed
from .schemas import HostSnapshot, IngestAck

logger = logging.getLogger(__name__)

SYSTEM_MEASUREMENT = "system_metrics"
DISK_MEASUREMENT = "disk_metrics"
PROCESS_MEASUREMENT = "process_metrics"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Payload = Union[bytes, str, dict, HostSnapshot]


def parse_snapshot(payload: Payload) -> HostSnapshot:
    if isinstance(payload, HostSnapshot):
        return payload
    try:
        if isinstance(payload, (bytes, str)):
            return HostSnapshot.model_validate_json(payload)
        return HostSnapshot.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(str(e)) from e


def is_zero_time(ts: Optional[datetime]) -> bool:
    # Go clients send 0001-01-01T00:00:00Z for an unset time
    return ts is None or ts.year == 1 or ts == EPOCH


def validate_snapshot(snapshot: HostSnapshot) -> datetime:
    """Check the required identity fields and return the UTC collection time."""
    if not snapshot.system.host_id.strip():
        raise MissingHostID(f"empty host_id from hostname {snapshot.system.hostname!r}")
    ts = snapshot.collected_at
    if ts is not None and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if is_zero_time(ts):
        raise MissingTimestamp(f"zero collected_at from host {snapshot.system.host_id}")
    return ts.astimezone(timezone.utc)


def common_tags(snapshot: HostSnapshot) -> Dict[str, str]:
    return {
        "host_id": snapshot.system.host_id,
        "hostname": snapshot.system.hostname,
        "os": snapshot.system.os,
    }


def prepare_system_point(snapshot: HostSnapshot, ts: datetime) -> Point:
    system, cpu, mem, net = snapshot.system, snapshot.cpu, snapshot.memory, snapshot.network
    fields = {
        "uptime_seconds": system.uptime,
        "os_version": system.os_version,
        "kernel": system.kernel,
        "kernel_version": system.kernel_version,
        "cpu_model_name": cpu.model_name,
        "cpu_cores": cpu.logical_cores,
        "cpu_usage_percent": cpu.usage_percent,
        "mem_total_gb": mem.total_gb,
        "mem_available_gb": mem.available_gb,
        "mem_used_gb": max(mem.total_gb - mem.available_gb, 0.0),
        "mem_usage_percent": mem.usage_percent,
        "net_bytes_sent_delta": net.bytes_sent_delta,
        "net_bytes_recv_delta": net.bytes_recv_delta,
        "net_packets_sent_delta": net.packets_sent_delta,
        "net_packets_recv_delta": net.packets_recv_delta,
        "net_upload_bytes_sec": net.upload_bytes_per_sec,
        "net_download_bytes_sec": net.download_bytes_per_sec,
    }
    return Point(SYSTEM_MEASUREMENT, common_tags(snapshot), fields, ts)


def prepare_disk_points(snapshot: HostSnapshot, ts: datetime) -> List[Point]:
    points = []
    for d in snapshot.disks:
        tags = dict(common_tags(snapshot), path=d.path)
        fields = {
            "total_gb": d.total_gb,
            "used_gb": d.used_gb,
            "free_gb": d.free_gb,
            "usage_percent": d.usage_percent,
        }
        points.append(Point(DISK_MEASUREMENT, tags, fields, ts))
    return points


def prepare_process_points(snapshot: HostSnapshot, ts: datetime, threshold: float) -> List[Point]:
    # pid and name are tags: the dashboard groups and joins process records on them
    points = []
    for p in snapshot.processes:
        if p.cpu_percent <= threshold and p.memory_percent <= threshold:
            logger.debug("skipping process %s (pid %d) below %.1f%% threshold", p.name, p.pid, threshold)
            continue
        tags = dict(common_tags(snapshot), pid=str(p.pid), name=p.name)
        fields = {
            "cpu_percent": p.cpu_percent,
            "mem_percent": p.memory_percent,
            "username": p.username,
        }
        points.append(Point(PROCESS_MEASUREMENT, tags, fields, ts))
    return points


def build_points(snapshot: HostSnapshot, threshold: float = 10.0) -> List[Point]:
    """All points for one snapshot, system point first, sharing one timestamp."""
    ts = validate_snapshot(snapshot)
    return (
        [prepare_system_point(snapshot, ts)]
        + prepare_disk_points(snapshot, ts)
        + prepare_process_points(snapshot, ts, threshold)
    )


class IngestionService:
    def __init__(self, store: Store, process_threshold: float = 10.0, timeout: Optional[float] = None):
        self.store = store
        self.process_threshold = process_threshold
        self.timeout = timeout

    async def _write(self, point: Point, deadline: Deadline):
        if deadline.expired:
            raise StoreWriteFailed(f"deadline passed before the {point.measurement} write")
        await self.store.write(point, timeout=deadline.remaining())

    async def ingest(self, payload: Payload) -> IngestAck:
        deadline = Deadline(self.timeout)
        snapshot = parse_snapshot(payload)
        points = build_points(snapshot, self.process_threshold)
        host_id = snapshot.system.host_id
        logger.info("received stats from host_id=%s hostname=%s", host_id, snapshot.system.hostname)
        logger.debug("payload received: %r", snapshot)

        system_point, rest = points[0], points[1:]
        try:
            await self._write(system_point, deadline)
        except (StoreWriteFailed, StoreUnavailable) as e:
            logger.error("failed to write %s point for host %s: %s", SYSTEM_MEASUREMENT, host_id, e)
            raise
        logger.debug("wrote %s point for host %s at %s", SYSTEM_MEASUREMENT, host_id, system_point.time)

        written, failed = 1, 0
        for point in rest:
            identity = point.tags.get("path") or f"{point.tags.get('name')} (pid {point.tags.get('pid')})"
            try:
                await self._write(point, deadline)
            except (StoreWriteFailed, StoreUnavailable) as e:
                failed += 1
                logger.error("failed to write %s point for host %s, %s: %s",
                             point.measurement, host_id, identity, e)
                continue
            written += 1
            logger.debug("wrote %s point for host %s, %s", point.measurement, host_id, identity)

        logger.info("stored stats for host_id=%s (%d points, %d failed)", host_id, written, failed)
        return IngestAck(host_id=host_id, points_written=written, points_failed=failed)
