#!/usr/bin/env python3
"""
eerosync - Offline Probe Suite
Local network checks that keep working when the eero cloud does not:
default route, gateway ping, router DNS and router NTP. Probe failures are
data (ProbeResult.success = False), never exceptions.
"""
import logging
import subprocess
import threading
import time
from collections import namedtuple
from datetime import datetime

import pytz

from eerosync.config import DEFAULT_GATEWAY, PROBE_MIN_INTERVAL
from eerosync.models import OfflineProbeSnapshot, ProbeResult, RouteProbeResult

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 5  # seconds
DNS_TEST_NAME = "eero.com"

CommandResult = namedtuple("CommandResult", ["succeeded", "stdout"])


def run_command(args, timeout=COMMAND_TIMEOUT):
    """Run an external tool and capture its output. Missing tools and timeouts count as failures."""
    try:
        completed = subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError:
        logger.debug("Probe tool not installed: %s", args[0])
        return CommandResult(False, "")
    except subprocess.TimeoutExpired:
        logger.debug("Probe command timed out: %s", " ".join(args))
        return CommandResult(False, "")
    except OSError as e:
        logger.debug("Probe command failed to start: %s (%s)", args[0], e)
        return CommandResult(False, "")
    return CommandResult(completed.returncode == 0, completed.stdout or "")


# ---------------------------------------------------------------------------
# Output Parsing
# ---------------------------------------------------------------------------

def parse_ping_latency(output):
    """Latency in ms from the first ``time=`` field of ping output."""
    for line in (output or "").splitlines():
        if "time=" in line:
            try:
                return float(line.split("time=")[1].split()[0])
            except (IndexError, ValueError):
                continue
    return None


def extract_prefixed_value(prefix, output):
    for line in (output or "").splitlines():
        trimmed = line.strip()
        if trimmed.startswith(prefix):
            return trimmed[len(prefix):].strip() or None
    return None


def parse_ip_route(output):
    """``default via 192.168.4.1 dev wlan0 ...`` -> (interface, gateway)."""
    for line in (output or "").splitlines():
        tokens = line.split()
        if not tokens or tokens[0] != "default":
            continue
        gateway = tokens[tokens.index("via") + 1] if "via" in tokens[:-1] else None
        interface = tokens[tokens.index("dev") + 1] if "dev" in tokens[:-1] else None
        return interface, gateway
    return None, None


def parse_route_get(output):
    """macOS ``route -n get default`` output -> (interface, gateway)."""
    return extract_prefixed_value("interface:", output), extract_prefixed_value("gateway:", output)


def detect_default_route(runner=run_command):
    """
    Return ``(interface, gateway)`` for the default route, or None when no
    routing tool answered.
    """
    result = runner(["ip", "route", "show", "default"])
    if result.succeeded:
        interface, gateway = parse_ip_route(result.stdout)
        if interface or gateway:
            return interface, gateway
    result = runner(["route", "-n", "get", "default"])
    if result.succeeded:
        return parse_route_get(result.stdout)
    return None


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def probe_route(runner=run_command):
    route = detect_default_route(runner)
    if route is None:
        return RouteProbeResult(success=False, message="Unable to read default route")
    interface, gateway = route
    if interface and gateway:
        return RouteProbeResult(interface_name=interface, gateway=gateway, success=True,
                                message=f"Route via {interface} -> {gateway}")
    return RouteProbeResult(interface_name=interface, gateway=gateway, success=False,
                            message="Default route incomplete")


def probe_gateway(gateway, runner=run_command):
    result = runner(["ping", "-c", "1", "-W", "1", gateway])
    if not result.succeeded:
        return ProbeResult(success=False, message="Gateway ping failed")
    latency = parse_ping_latency(result.stdout)
    if latency is None:
        return ProbeResult(success=True, message="Gateway reachable")
    return ProbeResult(success=True, message="Gateway reachable (%.2f ms)" % latency, latency_ms=latency)


def probe_dns(gateway, runner=run_command):
    result = runner(["dig", "+time=1", "+tries=1", f"@{gateway}", DNS_TEST_NAME, "A"])
    if not result.succeeded:
        return ProbeResult(success=False, message="Router DNS query failed")
    if "status: NOERROR" in result.stdout:
        return ProbeResult(success=True, message="Router DNS resolver responding")
    return ProbeResult(success=False, message="Router DNS did not return NOERROR")


def probe_ntp(gateway, runner=run_command):
    """UDP/123 check. Advisory only: many routers drop it, so it always reports success."""
    result = runner(["nc", "-u", "-z", "-w", "1", gateway, "123"])
    if result.succeeded:
        return ProbeResult(success=True, message="NTP port reachable")
    return ProbeResult(success=True, message="NTP no response (optional check)")


class OfflineProbeSuite:
    """Runs the four probes with a minimum spacing between runs unless forced."""

    def __init__(self, gateway=DEFAULT_GATEWAY, min_interval=PROBE_MIN_INTERVAL,
                 runner=run_command, clock=time.monotonic):
        self.gateway = gateway
        self.min_interval = min_interval
        self.runner = runner
        self._clock = clock
        self._lock = threading.Lock()
        self._last_run_at = None
        self.snapshot = OfflineProbeSnapshot()

    def run(self, force=False, gateway=None):
        """
        Run the suite and return the resulting snapshot. When the previous run is
        more recent than ``min_interval`` and *force* is false, the previous
        snapshot is returned unchanged.
        """
        with self._lock:
            now = self._clock()
            if (not force and self._last_run_at is not None
                    and now - self._last_run_at < self.min_interval):
                return self.snapshot

            route = probe_route(self.runner)
            target = route.gateway or gateway or self.gateway
            self.snapshot = OfflineProbeSnapshot(
                checked_at=datetime.now(pytz.UTC),
                gateway=probe_gateway(target, self.runner),
                dns=probe_dns(target, self.runner),
                ntp=probe_ntp(target, self.runner),
                route=route,
            )
            self._last_run_at = now
            logger.debug("Offline probes via %s: %s", target, self.snapshot.health_label)
            return self.snapshot
