"""
Unit tests for the collector's snapshot assembly, transport and dispatch loop
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from collector.collector import DispatchLoop, DispatchState, collect_snapshot, send
from collector.models import (
    CPUInfo,
    DiskUsage,
    HostSnapshot,
    MemInfo,
    NetworkCounterSample,
    ProcessSample,
    SystemInfo,
)
from collector.sampler import ProbeError


def counters(sent, recv, at):
    return NetworkCounterSample(bytes_sent=sent, bytes_recv=recv, packets_sent=sent // 100,
                                packets_recv=recv // 100, sampled_at=at)


@pytest.fixture
def sampler():
    """Sampler double whose families all succeed"""
    s = MagicMock()
    s.system_info.return_value = SystemInfo(hostname="web-1", host_id="abc", os="linux", uptime=10)
    s.cpu_info.return_value = CPUInfo(model_name="cpu", logical_cores=4, usage_percent=12.0)
    s.memory_info.return_value = MemInfo(total_gb=8.0, available_gb=4.0, usage_percent=50.0)
    s.processes.return_value = [ProcessSample(pid=1, name="init", cpu_percent=20.0, memory_percent=1.0)]
    s.disk_usage.return_value = [DiskUsage(path="/", total_gb=10.0, used_gb=5.0, free_gb=5.0, usage_percent=50.0)]
    s.network_counters.return_value = counters(3000, 6000, at=110.0)
    return s


@pytest.mark.unit
class TestCollectSnapshot:
    """collect_snapshot partial-success policy"""

    def test_all_families(self, sampler):
        snapshot, current = collect_snapshot(sampler, counters(1000, 1000, at=100.0))

        assert snapshot.system.host_id == "abc"
        assert snapshot.cpu.usage_percent == 12.0
        assert snapshot.disks[0].path == "/"
        assert snapshot.network.upload_bytes_per_sec == 200.0
        assert snapshot.network.download_bytes_per_sec == 500.0
        assert current == sampler.network_counters.return_value
        assert snapshot.collected_at.tzinfo is not None

    def test_failed_family_left_empty(self, sampler):
        sampler.disk_usage.side_effect = ProbeError("disk gone")
        sampler.cpu_info.side_effect = ProbeError("no cpu")

        snapshot, _ = collect_snapshot(sampler, None)

        assert snapshot.disks == []
        assert snapshot.cpu == CPUInfo()
        assert snapshot.memory.usage_percent == 50.0
        assert len(snapshot.processes) == 1

    def test_no_baseline_reports_zero_rate(self, sampler):
        snapshot, current = collect_snapshot(sampler, None)

        assert snapshot.network.upload_bytes_per_sec == 0.0
        assert current is sampler.network_counters.return_value

    def test_counter_failure_keeps_previous_baseline(self, sampler):
        previous = counters(1000, 1000, at=100.0)
        sampler.network_counters.side_effect = ProbeError("no counters")

        snapshot, current = collect_snapshot(sampler, previous)

        assert current is previous
        assert snapshot.network.bytes_sent_delta == 0

    def test_zero_elapsed_gives_zero_rate(self, sampler):
        snapshot, current = collect_snapshot(sampler, counters(1000, 1000, at=110.0))

        assert snapshot.network.upload_bytes_per_sec == 0.0
        assert current.sampled_at == 110.0


@pytest.mark.unit
class TestPayload:
    """HostSnapshot.to_payload"""

    def test_payload_shape(self):
        ts = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        payload = HostSnapshot(collected_at=ts, system=SystemInfo(host_id="abc")).to_payload()

        assert payload["collected_at"] == "2026-10-19T12:00:00+00:00"
        assert payload["system"]["host_id"] == "abc"
        assert set(payload) == {"collected_at", "system", "cpu", "memory", "network", "processes", "disks"}
        assert payload["network"]["upload_bytes_per_sec"] == 0.0


@pytest.mark.unit
class TestSend:
    """send() never raises"""

    def test_success(self):
        session = MagicMock()
        session.post.return_value.status_code = 200
        session.post.return_value.json.return_value = {"status": "success"}

        status, body = send({"a": 1}, url="http://ingest/api/stats", timeout=15, session=session)

        assert (status, body) == (200, {"status": "success"})
        session.post.assert_called_once_with(
            "http://ingest/api/stats", headers={"Content-Type": "application/json"}, json={"a": 1}, timeout=15)

    def test_timeout(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout()

        assert send({}, session=session) == (None, "timeout")

    def test_connection_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        status, body = send({}, session=session)
        assert status is None
        assert "refused" in body

    def test_http_error(self):
        response = MagicMock(status_code=400, text='{"error": "HostID is missing in system info"}')
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("400", response=response)

        status, body = send({}, session=session)
        assert status == 400
        assert "HostID" in body


@pytest.mark.unit
class TestDispatchLoop:
    """DispatchLoop state machine"""

    def test_tick_sends_and_returns_new_baseline(self, sampler):
        sender = MagicMock(return_value=(200, {"status": "success"}))
        loop = DispatchLoop(sampler, url="http://x/api/stats", timeout=3, sender=sender)

        current = loop.tick(counters(1000, 1000, at=100.0))

        assert current == sampler.network_counters.return_value
        payload = sender.call_args.args[0]
        assert payload["system"]["host_id"] == "abc"
        assert sender.call_args.kwargs == {"url": "http://x/api/stats", "timeout": 3}
        assert loop.state == DispatchState.IDLE

    def test_send_failure_does_not_raise(self, sampler):
        loop = DispatchLoop(sampler, sender=MagicMock(return_value=(None, "timeout")))

        loop.tick(None)

        assert loop.state == DispatchState.IDLE

    def test_dry_run_does_not_send(self, sampler):
        sender = MagicMock()
        DispatchLoop(sampler, sender=sender, dry_run=True).tick(None)

        sender.assert_not_called()

    def test_run_once(self, sampler):
        sender = MagicMock(return_value=(200, {}))
        loop = DispatchLoop(sampler, interval=60, sender=sender)

        loop.run(once=True)

        assert sender.call_count == 1
        assert loop.state == DispatchState.SHUTTING_DOWN

    def test_stop_finishes_in_flight_tick_then_exits(self, sampler):
        loop = DispatchLoop(sampler, interval=0.01)
        calls = []

        def sender(payload, url, timeout):
            calls.append(payload)
            if len(calls) == 2:
                loop.stop()
                assert loop.state == DispatchState.SENDING
            return 200, {}

        loop.sender = sender
        loop.run()

        assert len(calls) == 2
        assert loop.state == DispatchState.SHUTTING_DOWN

    def test_stopped_before_run_sends_nothing(self, sampler):
        sender = MagicMock()
        loop = DispatchLoop(sampler, sender=sender)

        loop.stop()
        loop.run()

        sender.assert_not_called()
        assert loop.state == DispatchState.SHUTTING_DOWN

    def test_baseline_carried_between_ticks(self, sampler):
        sampler.network_counters.side_effect = [
            counters(1000, 1000, at=0.0),
            counters(2000, 3000, at=5.0),
            counters(2500, 3000, at=10.0),
        ]
        sent = []
        loop = DispatchLoop(sampler, interval=0.001)

        def sender(payload, url, timeout):
            sent.append(payload["network"])
            if len(sent) == 2:
                loop.stop()
            return 200, {}

        loop.sender = sender
        loop.run()

        assert [n["upload_bytes_per_sec"] for n in sent] == [200.0, 100.0]
        assert [n["download_bytes_per_sec"] for n in sent] == [400.0, 0.0]

    def test_overrun_ticks_are_skipped(self, sampler):
        times = iter([0.0, 25.0, 25.0])
        loop = DispatchLoop(sampler, interval=10, clock=lambda: next(times))
        waits = []
        loop._stop = MagicMock()
        loop._stop.is_set.side_effect = [False, False, True]
        loop._stop.wait.side_effect = waits.append
        loop.sender = MagicMock(return_value=(200, {}))

        loop.run()

        # ticks due at 10 and 20 were missed; the next one is at 30
        assert waits == [5.0]
