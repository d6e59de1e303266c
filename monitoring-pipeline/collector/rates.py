# collector/rates.py
"""Turn two cumulative network counter samples into per-period deltas and rates."""

from datetime import timedelta
from typing import Union

from .models import NetworkCounterSample, NetworkRate


class InvalidDuration(ValueError):
    """Raised when the elapsed time between two samples is not positive."""


def counter_delta(current: int, previous: int) -> int:
    """Delta between two readings of a monotonic counter.

    A counter that went backwards was reset (interface restart, wrap); the
    current reading is then taken as the delta from a fresh zero baseline.
    This undercounts the tick that spans the reset instead of reporting a
    negative or wrapped-around value.
    """
    if current >= previous:
        return current - previous
    return current


def rate(
    current: NetworkCounterSample,
    previous: NetworkCounterSample,
    elapsed: Union[float, timedelta],
) -> NetworkRate:
    if isinstance(elapsed, timedelta):
        elapsed = elapsed.total_seconds()
    if elapsed <= 0:
        raise InvalidDuration(f"elapsed time must be positive, got {elapsed}s")

    sent = counter_delta(current.bytes_sent, previous.bytes_sent)
    recv = counter_delta(current.bytes_recv, previous.bytes_recv)
    return NetworkRate(
        bytes_sent_delta=sent,
        bytes_recv_delta=recv,
        packets_sent_delta=counter_delta(current.packets_sent, previous.packets_sent),
        packets_recv_delta=counter_delta(current.packets_recv, previous.packets_recv),
        upload_bytes_per_sec=sent / elapsed,
        download_bytes_per_sec=recv / elapsed,
    )
