#!/usr/bin/env python3
"""
eerosync - Local Throughput Sampler
Reads byte counters of the default-route interface once per second and
publishes an exponentially smoothed download/upload rate.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime

import psutil
import pytz

from eerosync.probes import detect_default_route

logger = logging.getLogger(__name__)

SAMPLE_INTERVAL = 1.0          # seconds
ROUTE_RECHECK_INTERVAL = 15.0  # seconds
SMOOTHING_PREVIOUS = 0.65
SMOOTHING_RAW = 0.35


@dataclass(frozen=True)
class LocalThroughput:
    interface: str
    down_bps: float  # bytes per second
    up_bps: float
    sampled_at: datetime

    @property
    def down_display(self):
        return format_rate(self.down_bps)

    @property
    def up_display(self):
        return format_rate(self.up_bps)

    def to_dict(self):
        return {
            "interface": self.interface,
            "down_bps": self.down_bps,
            "up_bps": self.up_bps,
            "down_display": self.down_display,
            "up_display": self.up_display,
            "sampled_at": self.sampled_at.isoformat(),
        }


def format_rate(bytes_per_second):
    """Compact bit rate such as ``12.5M`` or ``840K``."""
    bits = (bytes_per_second or 0) * 8
    if bits >= 1_000_000_000:
        value, suffix = bits / 1_000_000_000, "G"
    elif bits >= 1_000_000:
        value, suffix = bits / 1_000_000, "M"
    elif bits >= 1_000:
        value, suffix = bits / 1_000, "K"
    else:
        value, suffix = max(0.0, bits), "b"
    if value >= 100:
        return f"{value:.0f}{suffix}"
    if value >= 10:
        return f"{value:.1f}{suffix}"
    return f"{value:.2f}{suffix}"


def default_route_interface():
    route = detect_default_route()
    return route[0] if route else None


def read_interface_counters(interface):
    """``(bytes_recv, bytes_sent)`` for *interface*, or None if it is not present."""
    try:
        counters = psutil.net_io_counters(pernic=True)
    except (OSError, RuntimeError) as e:
        logger.debug("Interface counters unavailable: %s", e)
        return None
    stats = counters.get(interface)
    if stats is None:
        return None
    return stats.bytes_recv, stats.bytes_sent


class ThroughputSampler:
    """Background sampler; the latest value is available as ``current``."""

    def __init__(self, on_sample=None, interface_detector=default_route_interface,
                 counter_reader=read_interface_counters, clock=time.monotonic):
        self.on_sample = on_sample
        self.interface_detector = interface_detector
        self.counter_reader = counter_reader
        self._clock = clock
        self._thread = None
        self._stop = threading.Event()
        self.current = None
        self._reset(None)
        self._route_checked_at = None

    def _reset(self, interface):
        self.interface = interface
        self._previous = None
        self._smoothed = None

    def sample(self):
        """Take one reading and return the published LocalThroughput (or None)."""
        now = self._clock()
        if (self.interface is None or self._route_checked_at is None
                or now - self._route_checked_at >= ROUTE_RECHECK_INTERVAL):
            detected = self.interface_detector()
            if detected != self.interface:
                logger.info("Throughput interface changed to %s", detected)
                self._reset(detected)
            self._route_checked_at = now

        result = self._measure(now)
        self.current = result
        if self.on_sample is not None:
            try:
                self.on_sample(result)
            except Exception as e:
                logger.error("Throughput subscriber error: %s", e)
        return result

    def _measure(self, now):
        if not self.interface:
            return None
        counters = self.counter_reader(self.interface)
        if counters is None:
            return None

        previous, self._previous = self._previous, (now, counters[0], counters[1])
        if previous is None:
            return None
        then, prev_in, prev_out = previous
        if counters[0] < prev_in or counters[1] < prev_out:
            return None

        elapsed = max(0.001, now - then)
        raw_down = (counters[0] - prev_in) / elapsed
        raw_up = (counters[1] - prev_out) / elapsed
        if self._smoothed is not None:
            raw_down = self._smoothed[0] * SMOOTHING_PREVIOUS + raw_down * SMOOTHING_RAW
            raw_up = self._smoothed[1] * SMOOTHING_PREVIOUS + raw_up * SMOOTHING_RAW
        self._smoothed = (raw_down, raw_up)
        return LocalThroughput(self.interface, raw_down, raw_up, datetime.now(pytz.UTC))

    # ── background loop ────────────────────────────────────────────────────

    def _loop(self):
        logger.info("Throughput sampler started")
        while not self._stop.is_set():
            try:
                self.sample()
            except Exception as e:
                logger.error("Throughput sample error: %s", e)
            self._stop.wait(SAMPLE_INTERVAL)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="eerosync-throughput", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None
