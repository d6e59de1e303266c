"""
Unit tests for the psutil-backed sampler
"""
import uuid
from collections import namedtuple
from unittest.mock import MagicMock

import psutil
import pytest

from collector.sampler import GB, ProbeError, Sampler, read_cpu_model, read_host_id

svmem = namedtuple("svmem", "total available percent")
sdiskusage = namedtuple("sdiskusage", "total used free percent")
snetio = namedtuple("snetio", "bytes_sent bytes_recv packets_sent packets_recv")


def proc(**info):
    p = MagicMock()
    p.info = info
    return p


@pytest.fixture
def probe():
    p = MagicMock()
    p.cpu_percent.return_value = 12.3456
    p.cpu_count.return_value = 8
    p.virtual_memory.return_value = svmem(total=16 * GB, available=4 * GB, percent=75.0)
    p.disk_usage.return_value = sdiskusage(total=100 * GB, used=40 * GB, free=60 * GB, percent=40.0)
    p.net_io_counters.return_value = snetio(1000, 2000, 10, 20)
    return p


@pytest.mark.unit
class TestSampler:
    """One family per call"""

    def test_primes_cpu_counters(self, probe):
        Sampler(probe=probe)
        probe.cpu_percent.assert_called_once_with(interval=None)

    def test_cpu_usage_rounded(self, probe):
        cpu = Sampler(probe=probe).cpu_info()

        assert cpu.usage_percent == 12.35
        assert cpu.logical_cores == 8

    def test_cpu_failure(self, probe):
        sampler = Sampler(probe=probe)
        probe.cpu_percent.side_effect = psutil.AccessDenied()

        with pytest.raises(ProbeError):
            sampler.cpu_info()

    def test_memory_in_gb(self, probe):
        mem = Sampler(probe=probe).memory_info()

        assert (mem.total_gb, mem.available_gb, mem.usage_percent) == (16.0, 4.0, 75.0)

    def test_failing_disk_path_is_skipped(self, probe):
        probe.disk_usage.side_effect = [OSError("gone"), sdiskusage(10 * GB, 5 * GB, 5 * GB, 50.0)]

        [disk] = Sampler(probe=probe, disk_paths=["/mnt/gone", "/"]).disk_usage()

        assert disk.path == "/"
        assert disk.usage_percent == 50.0
        assert disk.free_gb == 5.0

    def test_all_disk_paths_failing(self, probe):
        probe.disk_usage.side_effect = OSError("gone")

        with pytest.raises(ProbeError):
            Sampler(probe=probe, disk_paths=["/"]).disk_usage()

    def test_process_threshold_filter(self, probe):
        probe.process_iter.return_value = [
            proc(pid=1, name="busy", username="root", cpu_percent=50.0, memory_percent=1.0),
            proc(pid=2, name="fat", username=None, cpu_percent=0.0, memory_percent=12.0),
            proc(pid=3, name="edge", username="root", cpu_percent=10.0, memory_percent=10.0),
            proc(pid=4, name="zombie", username="root", cpu_percent=None, memory_percent=None),
        ]

        procs = Sampler(probe=probe, process_threshold=10.0).processes()

        assert [(p.pid, p.name, p.username) for p in procs] == [(1, "busy", "root"), (2, "fat", "")]

    def test_process_iteration_failure(self, probe):
        probe.process_iter.side_effect = psutil.AccessDenied()

        with pytest.raises(ProbeError):
            Sampler(probe=probe).processes()

    def test_network_counters(self, probe):
        sample = Sampler(probe=probe).network_counters()

        assert (sample.bytes_sent, sample.bytes_recv, sample.packets_sent, sample.packets_recv) == (1000, 2000, 10, 20)
        assert sample.sampled_at > 0
        probe.net_io_counters.assert_called_once_with(pernic=False)

    @pytest.mark.parametrize("outcome", [None, psutil.AccessDenied()])
    def test_network_counters_unavailable(self, probe, outcome):
        if isinstance(outcome, Exception):
            probe.net_io_counters.side_effect = outcome
        else:
            probe.net_io_counters.return_value = outcome

        with pytest.raises(ProbeError):
            Sampler(probe=probe).network_counters()

    def test_explicit_host_id(self, probe):
        assert Sampler(probe=probe, host_id="fixed").host_id == "fixed"


@pytest.mark.unit
class TestHostFiles:
    """Host identity and CPU model lookups"""

    def test_machine_id_file(self, tmp_path):
        path = tmp_path / "machine-id"
        path.write_text("0123456789abcdef\n")

        assert read_host_id([str(tmp_path / "missing"), str(path)]) == "0123456789abcdef"

    def test_empty_machine_id_falls_through(self, tmp_path):
        empty = tmp_path / "empty"
        empty.write_text("\n")

        host_id = read_host_id([str(empty)])

        assert uuid.UUID(host_id)
        assert read_host_id([str(empty)]) == host_id

    def test_cpu_model(self, tmp_path):
        path = tmp_path / "cpuinfo"
        path.write_text("processor\t: 0\nvendor_id\t: AuthenticAMD\nmodel name\t: AMD EPYC 7B13\n")

        assert read_cpu_model(str(path)) == "AMD EPYC 7B13"
