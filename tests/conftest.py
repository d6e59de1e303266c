"""
Pytest configuration and fixtures for the monitoring pipeline tests.
"""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from ingest.app.config import Settings
from ingest.app.db import MemoryStore
from ingest.app.errors import StoreQueryFailed, StoreWriteFailed
from ingest.app.main import create_app

# 12:00:00 UTC sits on a 30s window boundary
NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FlakyStore(MemoryStore):
    """MemoryStore that fails writes or queries for selected measurements."""

    def __init__(self, fail_writes=(), fail_queries=()):
        super().__init__()
        self.fail_writes = set(fail_writes)
        self.fail_queries = set(fail_queries)

    async def write_many(self, points, *, timeout=None):
        for p in points:
            if p.measurement in self.fail_writes:
                raise StoreWriteFailed(f"write to {p.measurement} refused")
        await super().write_many(points, timeout=timeout)

    async def query(self, query, *, timeout=None):
        if query.measurement in self.fail_queries:
            raise StoreQueryFailed(f"query on {query.measurement} refused")
        return await super().query(query, timeout=timeout)


@pytest.fixture
def store():
    """Empty in-memory store"""
    return MemoryStore()


@pytest.fixture
def clock():
    """Frozen clock at NOW"""
    return lambda: NOW


@pytest.fixture
def make_payload():
    """Factory for HostSnapshot-shaped payload dicts"""

    def factory(host_id="abc", hostname="web-1", collected_at=NOW, cpu=12.5, mem=40.0,
                disk=55.0, processes=None, disks=None):
        if processes is None:
            processes = [
                {"pid": 101, "name": "postgres", "cpu_percent": 35.0, "memory_percent": 4.0, "username": "postgres"},
                {"pid": 202, "name": "sshd", "cpu_percent": 0.5, "memory_percent": 0.1, "username": "root"},
            ]
        if disks is None:
            disks = [{"path": "/", "total_gb": 100.0, "used_gb": disk, "free_gb": 100.0 - disk, "usage_percent": disk}]
        return {
            "collected_at": collected_at.isoformat() if isinstance(collected_at, datetime) else collected_at,
            "system": {
                "hostname": hostname,
                "host_id": host_id,
                "os": "linux",
                "os_version": "24.04",
                "kernel": "x86_64",
                "kernel_version": "6.8.0-45-generic",
                "uptime": 3600,
            },
            "cpu": {"model_name": "AMD EPYC 7B13", "logical_cores": 8, "usage_percent": cpu},
            "memory": {"total_gb": 16.0, "available_gb": 9.6, "usage_percent": mem},
            "network": {
                "bytes_sent_delta": 5000,
                "bytes_recv_delta": 10000,
                "packets_sent_delta": 50,
                "packets_recv_delta": 80,
                "upload_bytes_per_sec": 1000.0,
                "download_bytes_per_sec": 2000.0,
            },
            "processes": processes,
            "disks": disks,
        }

    return factory


@pytest.fixture
def settings():
    return Settings(store_backend="memory")


@pytest.fixture
def client(settings, store):
    """FastAPI test client over an in-memory store and the real clock"""
    app = create_app(settings=settings, store=store)
    with TestClient(app) as test_client:
        yield test_client
