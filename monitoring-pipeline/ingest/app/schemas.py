# ingest/app/schemas.py
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime

# --- inbound: what the collector posts to /api/stats ---

class Inbound(BaseModel):
    # NaN and inf are malformed readings, not values
    model_config = ConfigDict(allow_inf_nan=False)

class SystemInfo(Inbound):
    hostname: str = ""
    host_id: str = ""
    os: str = ""
    os_version: str = ""
    kernel: str = ""
    kernel_version: str = ""
    uptime: int = 0  # seconds

class CPUInfo(Inbound):
    model_name: str = ""
    logical_cores: int = 0
    usage_percent: float = 0.0

class MemInfo(Inbound):
    total_gb: float = 0.0
    available_gb: float = 0.0
    usage_percent: float = 0.0

class NetworkRate(Inbound):
    bytes_sent_delta: int = 0
    bytes_recv_delta: int = 0
    packets_sent_delta: int = 0
    packets_recv_delta: int = 0
    upload_bytes_per_sec: float = 0.0
    download_bytes_per_sec: float = 0.0

class ProcessSample(Inbound):
    pid: int
    name: str = ""
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    username: str = ""

class DiskUsage(Inbound):
    path: str
    total_gb: float = 0.0
    used_gb: float = 0.0
    free_gb: float = 0.0
    usage_percent: float = 0.0

class HostSnapshot(Inbound):
    collected_at: Optional[datetime] = None
    system: SystemInfo = Field(default_factory=SystemInfo)
    cpu: CPUInfo = Field(default_factory=CPUInfo)
    memory: MemInfo = Field(default_factory=MemInfo)
    network: NetworkRate = Field(default_factory=NetworkRate)
    processes: List[ProcessSample] = Field(default_factory=list)
    disks: List[DiskUsage] = Field(default_factory=list)

class IngestAck(BaseModel):
    status: str = "success"
    host_id: str
    points_written: int
    points_failed: int = 0

# --- outbound: dashboard projections, computed per query ---
# Field names are Python-side; aliases are the dashboard's JSON keys.

class Outbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class HostOverview(Outbound):
    host_id: str = Field(alias="id")
    hostname: str
    status: str  # online, warning, offline
    cpu_usage: float = Field(default=0.0, alias="cpuUsage")
    ram_usage: float = Field(default=0.0, alias="ramUsage")
    disk_usage: float = Field(default=0.0, alias="diskUsage")
    network_upload: float = Field(default=0.0, alias="networkUpload")  # bytes/sec
    network_download: float = Field(default=0.0, alias="networkDownload")
    last_seen: datetime = Field(alias="lastSeen")

class CPUDetails(Outbound):
    cores: int = 0
    model_name: str = ""

class MemoryDetails(Outbound):
    total_gb: float = 0.0
    available_gb: float = Field(default=0.0, alias="free_gb")
    used_gb: float = 0.0
    usage_percent: float = 0.0

class RootDiskDetails(Outbound):
    path: str = "/"
    total_gb: float = 0.0
    used_gb: float = 0.0
    free_gb: float = 0.0
    usage_percent: float = 0.0

class OSDetails(Outbound):
    name: str = ""
    version: str = ""
    kernel: str = ""  # architecture, e.g. x86_64
    kernel_version: str = Field(default="", alias="kernelArch")

class ProcessDetail(Outbound):
    pid: int
    name: str
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    username: str = ""

class HostDetails(Outbound):
    host_id: str = Field(alias="id")
    hostname: str = ""
    status: str
    last_seen: datetime = Field(alias="lastSeen")
    uptime_seconds: int = Field(default=0, alias="uptimeSeconds")
    cpu: CPUDetails = Field(default_factory=CPUDetails)
    memory: MemoryDetails = Field(default_factory=MemoryDetails)
    disk: RootDiskDetails = Field(default_factory=RootDiskDetails)
    os: OSDetails = Field(default_factory=OSDetails)
    processes: List[ProcessDetail] = Field(default_factory=list)
    cpu_usage: float = Field(default=0.0, alias="cpuUsage")
    ram_usage: float = Field(default=0.0, alias="ramUsage")
    network_upload: float = Field(default=0.0, alias="networkUpload")
    network_download: float = Field(default=0.0, alias="networkDownload")

class MetricPoint(Outbound):
    timestamp: datetime
    value: float
