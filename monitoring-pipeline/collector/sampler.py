# collector/sampler.py
"""Typed wrappers around psutil, one call per metric family.

Every ``Sampler`` method either returns a fully built snapshot or raises
``ProbeError``; the dispatch loop decides what a failure costs.
"""

from __future__ import annotations

import logging
import platform
import socket
import time
import uuid
from typing import Iterable, List, Optional

import psutil

from .models import (
    CPUInfo,
    DiskUsage,
    MemInfo,
    NetworkCounterSample,
    ProcessSample,
    SystemInfo,
)

logger = logging.getLogger(__name__)

GB = 1024 ** 3
DEFAULT_PROCESS_THRESHOLD = 10.0
DEFAULT_DISK_PATHS = ("/",)
MACHINE_ID_FILES = ("/etc/machine-id", "/var/lib/dbus/machine-id")


class ProbeError(RuntimeError):
    """A metric family could not be read from the OS."""


def bytes_to_gb(value: int) -> float:
    return value / GB


def read_host_id(candidates: Iterable[str] = MACHINE_ID_FILES) -> str:
    """Stable host identity that survives restarts.

    Prefers the systemd/dbus machine id; falls back to a UUID derived from the
    primary MAC address so the id is still stable on hosts without one.
    """
    for path in candidates:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                value = fh.read().strip()
        except OSError:
            continue
        if value:
            return value
    return str(uuid.uuid5(uuid.NAMESPACE_OID, f"{uuid.getnode():012x}"))


def read_cpu_model(cpuinfo_path: str = "/proc/cpuinfo") -> str:
    try:
        with open(cpuinfo_path, "r", encoding="utf-8") as fh:
            for line in fh:
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor()


def _os_version() -> str:
    try:
        release = platform.freedesktop_os_release()
    except (OSError, AttributeError):
        return platform.version()
    return release.get("VERSION_ID") or release.get("VERSION") or platform.version()


class Sampler:
    """Reads one metric family per call from ``probe`` (the psutil module by default)."""

    def __init__(
        self,
        probe=psutil,
        process_threshold: float = DEFAULT_PROCESS_THRESHOLD,
        disk_paths: Iterable[str] = DEFAULT_DISK_PATHS,
        host_id: Optional[str] = None,
    ):
        self.probe = probe
        self.process_threshold = process_threshold
        self.disk_paths = tuple(disk_paths)
        self._host_id = host_id
        # first cpu_percent(interval=None) call only primes psutil's counters
        try:
            self.probe.cpu_percent(interval=None)
        except (psutil.Error, OSError) as exc:
            logger.warning("could not prime cpu counters: %s", exc)

    @property
    def host_id(self) -> str:
        if not self._host_id:
            self._host_id = read_host_id()
        return self._host_id

    def system_info(self) -> SystemInfo:
        try:
            uptime = int(time.time() - self.probe.boot_time())
            return SystemInfo(
                hostname=socket.gethostname(),
                host_id=self.host_id,
                os=platform.system().lower(),
                os_version=_os_version(),
                kernel=platform.machine(),
                kernel_version=platform.release(),
                uptime=max(uptime, 0),
            )
        except (psutil.Error, OSError) as exc:
            raise ProbeError(f"error getting system info: {exc}") from exc

    def cpu_info(self) -> CPUInfo:
        try:
            usage = self.probe.cpu_percent(interval=None)
            cores = self.probe.cpu_count(logical=True) or 0
        except (psutil.Error, OSError) as exc:
            raise ProbeError(f"error getting CPU info: {exc}") from exc
        return CPUInfo(
            model_name=read_cpu_model(),
            logical_cores=cores,
            usage_percent=round(usage, 2),
        )

    def memory_info(self) -> MemInfo:
        try:
            mem = self.probe.virtual_memory()
        except (psutil.Error, OSError) as exc:
            raise ProbeError(f"error getting memory info: {exc}") from exc
        return MemInfo(
            total_gb=bytes_to_gb(mem.total),
            available_gb=bytes_to_gb(mem.available),
            usage_percent=round(mem.percent, 2),
        )

    def disk_usage(self) -> List[DiskUsage]:
        disks = []
        for path in self.disk_paths:
            try:
                usage = self.probe.disk_usage(path)
            except (psutil.Error, OSError) as exc:
                logger.warning("could not get disk usage for %s: %s", path, exc)
                continue
            disks.append(DiskUsage(
                path=path,
                total_gb=bytes_to_gb(usage.total),
                used_gb=bytes_to_gb(usage.used),
                free_gb=bytes_to_gb(usage.free),
                usage_percent=usage.percent,
            ))
        if self.disk_paths and not disks:
            raise ProbeError(f"no disk usage available for {', '.join(self.disk_paths)}")
        return disks

    def processes(self) -> List[ProcessSample]:
        """Processes whose CPU or memory share exceeds ``process_threshold``.

        psutil keeps the Process objects between calls, so cpu_percent is the
        share since the previous tick (0.0 for processes seen the first time).
        """
        attrs = ["pid", "name", "username", "cpu_percent", "memory_percent"]
        procs = []
        try:
            for p in self.probe.process_iter(attrs=attrs):
                info = p.info
                cpu = info.get("cpu_percent") or 0.0
                mem = info.get("memory_percent") or 0.0
                if cpu > self.process_threshold or mem > self.process_threshold:
                    procs.append(ProcessSample(
                        pid=info["pid"],
                        name=info.get("name") or "",
                        cpu_percent=cpu,
                        memory_percent=mem,
                        username=info.get("username") or "",
                    ))
        except (psutil.Error, OSError) as exc:
            raise ProbeError(f"error getting process list: {exc}") from exc
        return procs

    def network_counters(self) -> NetworkCounterSample:
        try:
            counters = self.probe.net_io_counters(pernic=False)
        except (psutil.Error, OSError) as exc:
            raise ProbeError(f"failed to get I/O counters: {exc}") from exc
        if counters is None:
            raise ProbeError("no I/O counters returned")
        return NetworkCounterSample(
            bytes_sent=counters.bytes_sent,
            bytes_recv=counters.bytes_recv,
            packets_sent=counters.packets_sent,
            packets_recv=counters.packets_recv,
            sampled_at=time.monotonic(),
        )

