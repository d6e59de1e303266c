# collector/models.py
"""Typed snapshots produced by the sampler and shipped to the ingest API."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List


@dataclass(frozen=True)
class SystemInfo:
    hostname: str = ""
    host_id: str = ""
    os: str = ""
    os_version: str = ""
    kernel: str = ""
    kernel_version: str = ""
    uptime: int = 0  # seconds


@dataclass(frozen=True)
class CPUInfo:
    model_name: str = ""
    logical_cores: int = 0
    usage_percent: float = 0.0


@dataclass(frozen=True)
class MemInfo:
    total_gb: float = 0.0
    available_gb: float = 0.0
    usage_percent: float = 0.0


@dataclass(frozen=True)
class NetworkCounterSample:
    """Cumulative interface counters, summed over all NICs.

    ``sampled_at`` is a monotonic clock reading in seconds, only meaningful
    relative to another sample from the same process.
    """

    bytes_sent: int
    bytes_recv: int
    packets_sent: int
    packets_recv: int
    sampled_at: float


@dataclass(frozen=True)
class NetworkRate:
    bytes_sent_delta: int = 0
    bytes_recv_delta: int = 0
    packets_sent_delta: int = 0
    packets_recv_delta: int = 0
    upload_bytes_per_sec: float = 0.0
    download_bytes_per_sec: float = 0.0


@dataclass(frozen=True)
class ProcessSample:
    pid: int
    name: str
    cpu_percent: float
    memory_percent: float
    username: str = ""


@dataclass(frozen=True)
class DiskUsage:
    path: str
    total_gb: float
    used_gb: float
    free_gb: float
    usage_percent: float


@dataclass(frozen=True)
class HostSnapshot:
    collected_at: datetime
    system: SystemInfo = field(default_factory=SystemInfo)
    cpu: CPUInfo = field(default_factory=CPUInfo)
    memory: MemInfo = field(default_factory=MemInfo)
    network: NetworkRate = field(default_factory=NetworkRate)
    processes: List[ProcessSample] = field(default_factory=list)
    disks: List[DiskUsage] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON-ready body for ``POST /api/stats``."""
        payload = asdict(self)
        payload["collected_at"] = self.collected_at.isoformat()
        return payload
