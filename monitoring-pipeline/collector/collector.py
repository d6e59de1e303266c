# collector/collector.py
import os
import enum
import signal
import time
import logging
import threading
import requests
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple
import argparse

from .models import HostSnapshot, NetworkCounterSample, NetworkRate
from .rates import InvalidDuration, rate
from .sampler import DEFAULT_DISK_PATHS, ProbeError, Sampler

logger = logging.getLogger(__name__)

# Config from environment or defaults
INGEST_HOST = os.getenv("INGEST_HOST", "localhost")
INGEST_PORT = os.getenv("INGEST_PORT", "8080")
INGEST_URL = os.getenv("INGEST_URL") or f"http://{INGEST_HOST}:{INGEST_PORT}/api/stats"
INTERVAL = float(os.getenv("COLLECTOR_INTERVAL_SECONDS", "5"))
SEND_TIMEOUT = float(os.getenv("COLLECTOR_SEND_TIMEOUT_SECONDS", "15"))
PROCESS_THRESHOLD = float(os.getenv("COLLECTOR_PROCESS_THRESHOLD", "10.0"))
DISK_PATHS = [p.strip() for p in os.getenv("COLLECTOR_DISK_PATHS", "").split(",") if p.strip()] or list(DEFAULT_DISK_PATHS)
LOG_LEVEL = os.getenv("COLLECTOR_LOG_LEVEL", "INFO")

HEADERS = {"Content-Type": "application/json"}


class DispatchState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    SENDING = "sending"
    SHUTTING_DOWN = "shutting_down"


def collect_snapshot(sampler: Sampler, previous: Optional[NetworkCounterSample]) -> Tuple[HostSnapshot, Optional[NetworkCounterSample]]:
    """Sample every metric family once.

    A failing family is logged and left at its empty default; the rest of the
    snapshot is still returned. Returns the snapshot and the counter sample to
    use as ``previous`` on the next tick.
    """
    collected_at = datetime.now(timezone.utc)
    parts = {}
    for key, probe in (
        ("system", sampler.system_info),
        ("cpu", sampler.cpu_info),
        ("memory", sampler.memory_info),
        ("processes", sampler.processes),
        ("disks", sampler.disk_usage),
    ):
        try:
            parts[key] = probe()
        except ProbeError as e:
            logger.error("sampling %s failed: %s", key, e)

    network = NetworkRate()
    try:
        current = sampler.network_counters()
    except ProbeError as e:
        logger.error("sampling network counters failed: %s", e)
        current = previous
    else:
        if previous is not None:
            try:
                network = rate(current, previous, current.sampled_at - previous.sampled_at)
            except InvalidDuration as e:
                logger.error("error calculating network rates: %s", e)

    return HostSnapshot(collected_at=collected_at, network=network, **parts), current


def send(payload, url=INGEST_URL, timeout=SEND_TIMEOUT, session=None):
    """POST one payload. Returns (status_code, body) or (None, error string); never raises."""
    http = session or requests
    try:
        r = http.post(url, headers=HEADERS, json=payload, timeout=timeout)
        r.raise_for_status()
        return r.status_code, r.json()
    except requests.Timeout:
        logger.error("request to %s timed out after %ss", url, timeout)
        return None, "timeout"
    except requests.HTTPError as e:
        body = e.response.text if e.response is not None else ""
        logger.error("server at %s responded with %s: %s", url, e, body)
        return e.response.status_code if e.response is not None else None, body
    except (requests.RequestException, ValueError) as e:
        logger.error("error sending stats to %s: %s", url, e)
        return None, str(e)


class DispatchLoop:
    """Periodic sample-and-send loop.

    One tick runs at a time; the network counter baseline is a local of
    ``run`` and travels through ``tick`` as an argument and a return value.
    """

    def __init__(
        self,
        sampler: Sampler,
        url: str = INGEST_URL,
        interval: float = INTERVAL,
        timeout: float = SEND_TIMEOUT,
        sender: Callable = send,
        clock: Callable[[], float] = time.monotonic,
        dry_run: bool = False,
    ):
        self.sampler = sampler
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.sender = sender
        self.clock = clock
        self.dry_run = dry_run
        self.state = DispatchState.IDLE
        self._stop = threading.Event()

    def stop(self):
        self._stop.set()
        if self.state == DispatchState.IDLE:
            self.state = DispatchState.SHUTTING_DOWN

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def baseline(self) -> Optional[NetworkCounterSample]:
        try:
            return self.sampler.network_counters()
        except ProbeError as e:
            logger.warning("no initial network counters, first tick reports zero rates: %s", e)
            return None

    def tick(self, previous: Optional[NetworkCounterSample]) -> Optional[NetworkCounterSample]:
        self.state = DispatchState.SAMPLING
        logger.debug("collecting stats...")
        snapshot, current = collect_snapshot(self.sampler, previous)
        payload = snapshot.to_payload()

        self.state = DispatchState.SENDING
        if self.dry_run:
            logger.info("dry run, payload: %s", payload)
        else:
            logger.debug("sending snapshot for host %s to %s", snapshot.system.host_id, self.url)
            status, resp = self.sender(payload, url=self.url, timeout=self.timeout)
            if status is not None and 200 <= status < 300:
                logger.info("stats sent -> %s %s", status, resp)
            else:
                logger.warning("failed to send stats (%s), dropping this sample", status)

        self.state = DispatchState.SHUTTING_DOWN if self.stopping else DispatchState.IDLE
        return current

    def run(self, once: bool = False):
        logger.info("collector: sending to %s every %ss", self.url, self.interval)
        previous = self.baseline()
        next_tick = self.clock()
        while not self.stopping:
            previous = self.tick(previous)
            if once:
                break
            next_tick += self.interval
            now = self.clock()
            if self.interval > 0 and now > next_tick:
                skipped = int((now - next_tick) // self.interval) + 1
                logger.warning("tick overran the interval, skipping %d tick(s)", skipped)
                next_tick += skipped * self.interval
            self._stop.wait(max(next_tick - self.clock(), 0))
        self.state = DispatchState.SHUTTING_DOWN
        logger.info("collector stopped")


def install_signal_handlers(loop: DispatchLoop):
    def handle(signum, frame):
        logger.info("received signal %s, shutting down after the current tick", signal.Signals(signum).name)
        loop.stop()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv=None):
    parser = argparse.ArgumentParser(description="sample host metrics and ship them to the ingest API")
    parser.add_argument("--once", action="store_true", help="sample and send a single snapshot, then exit")
    parser.add_argument("--dry-run", action="store_true", help="log the payload instead of sending it")
    parser.add_argument("--url", type=str, default=INGEST_URL)
    parser.add_argument("--interval", type=float, default=INTERVAL)
    parser.add_argument("--timeout", type=float, default=SEND_TIMEOUT)
    parser.add_argument("--threshold", type=float, default=PROCESS_THRESHOLD,
                        help="report processes above this CPU or memory percent")
    parser.add_argument("--disk-path", dest="disk_paths", action="append",
                        help="monitored mount point, repeatable (default: %s)" % ",".join(DISK_PATHS))
    parser.add_argument("--log-level", type=str, default=LOG_LEVEL)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sampler = Sampler(process_threshold=args.threshold, disk_paths=args.disk_paths or DISK_PATHS)
    loop = DispatchLoop(sampler, url=args.url, interval=args.interval, timeout=args.timeout, dry_run=args.dry_run)
    install_signal_handlers(loop)
    loop.run(once=args.once)


if __name__ == "__main__":
    main()
