# ingest/app/status.py
from dataclasses import dataclass
from datetime import datetime, timedelta

ONLINE = "online"
WARNING = "warning"
OFFLINE = "offline"


@dataclass(frozen=True)
class StatusThresholds:
    active_window: timedelta = timedelta(seconds=30)
    grace: timedelta = timedelta(seconds=5)
    cpu_percent: float = 85.0
    mem_percent: float = 85.0
    disk_percent: float = 90.0


DEFAULT_THRESHOLDS = StatusThresholds()


def derive_status(
    last_seen: datetime,
    now: datetime,
    cpu_percent: float,
    mem_percent: float,
    disk_percent: float,
    thresholds: StatusThresholds = DEFAULT_THRESHOLDS,
) -> str:
    """Classify a host as online, warning or offline.

    A host is offline once its newest record is older than the active window
    plus grace; otherwise it is in warning when any usage strictly exceeds
    its threshold.
    """
    if now - last_seen > thresholds.active_window + thresholds.grace:
        return OFFLINE
    if (
        cpu_percent > thresholds.cpu_percent
        or mem_percent > thresholds.mem_percent
        or disk_percent > thresholds.disk_percent
    ):
        return WARNING
    return ONLINE
