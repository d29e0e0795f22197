#!/usr/bin/env python3
"""
eerosync - Polling Scheduler
Background thread that runs the refresh callback on a foreground or
background cadence. The first tick fires as soon as the scheduler starts;
each following tick is scheduled only after the previous one has finished.
"""
import logging
import threading
import time

from eerosync.config import (
    DEFAULT_BACKGROUND_INTERVAL,
    DEFAULT_FOREGROUND_INTERVAL,
    clamp_intervals,
)

logger = logging.getLogger(__name__)

FOREGROUND = "foreground"
BACKGROUND = "background"
MODES = (FOREGROUND, BACKGROUND)


def mode_for_visibility(popover_visible, window_visible):
    """Foreground whenever any UI surface is showing."""
    return FOREGROUND if (popover_visible or window_visible) else BACKGROUND


class PollingScheduler:
    """Runs *on_tick* periodically on a daemon thread. Ticks never overlap."""

    def __init__(self, on_tick, foreground_interval=DEFAULT_FOREGROUND_INTERVAL,
                 background_interval=DEFAULT_BACKGROUND_INTERVAL, mode=BACKGROUND,
                 clock=time.monotonic):
        self.on_tick = on_tick
        self.foreground_interval, self.background_interval = clamp_intervals(
            foreground_interval, background_interval)
        self.mode = mode
        self._clock = clock
        self._cond = threading.Condition()
        self._tick_lock = threading.Lock()
        self._thread = None
        self._stop_event = threading.Event()
        self._stop_event.set()
        self._triggered = False
        self._last_tick_at = None
        self.tick_count = 0

    # ── configuration ──────────────────────────────────────────────────────

    def next_interval(self):
        return self.foreground_interval if self.mode == FOREGROUND else self.background_interval

    def set_mode(self, mode):
        if mode not in MODES:
            raise ValueError(f"Unknown polling mode: {mode}")
        with self._cond:
            if mode == self.mode:
                return
            self.mode = mode
            self._cond.notify_all()
        logger.debug("Polling mode set to %s (%.0fs)", mode, self.next_interval())

    def update_intervals(self, foreground, background):
        with self._cond:
            self.foreground_interval, self.background_interval = clamp_intervals(foreground, background)
            self._cond.notify_all()

    # ── lifecycle ──────────────────────────────────────────────────────────

    @property
    def is_running(self):
        return (self._thread is not None and self._thread.is_alive()
                and not self._stop_event.is_set())

    def start(self):
        """Start polling. Calling start() on a running scheduler does nothing."""
        with self._cond:
            if self.is_running:
                return
            self._stop_event = threading.Event()
            self._triggered = False
            self._thread = threading.Thread(target=self._run, args=(self._stop_event,),
                                            name="eerosync-poller", daemon=True)
            self._thread.start()
        logger.info("Polling scheduler started (%s)", self.mode)

    def stop(self, timeout=5):
        with self._cond:
            self._stop_event.set()
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("Polling scheduler stopped")

    def trigger_now(self):
        """Request an immediate tick. Runs inline when the scheduler is not running."""
        with self._cond:
            if self.is_running:
                self._triggered = True
                self._cond.notify_all()
                return
        self._tick()

    # ── loop ───────────────────────────────────────────────────────────────

    def _tick(self):
        with self._tick_lock:
            try:
                self.on_tick()
            except Exception as e:
                logger.error("Polling tick error: %s", e)
            finally:
                self.tick_count += 1
                self._last_tick_at = self._clock()

    def _wait_for_next_tick(self, stop_event):
        """Block until the current interval elapses, a trigger arrives or stop() is called.

        The deadline is recomputed whenever the mode or intervals change, measured
        from the end of the previous tick.
        """
        with self._cond:
            while not stop_event.is_set():
                if self._triggered:
                    self._triggered = False
                    return True
                remaining = (self._last_tick_at or 0) + self.next_interval() - self._clock()
                if remaining <= 0:
                    return True
                self._cond.wait(remaining)
            return False

    def _run(self, stop_event):
        self._tick()
        while self._wait_for_next_tick(stop_event):
            if stop_event.is_set():
                break
            self._tick()
