"""
Unit tests for the polling scheduler.
"""
import threading
import time

import pytest

from eerosync.config import MIN_BACKGROUND_INTERVAL, MIN_FOREGROUND_INTERVAL
from eerosync.scheduler import BACKGROUND, FOREGROUND, PollingScheduler, mode_for_visibility


class TickRecorder:
    def __init__(self):
        self.count = 0
        self.ticked = threading.Event()

    def __call__(self):
        self.count += 1
        self.ticked.set()

    def wait(self, timeout=2):
        fired = self.ticked.wait(timeout)
        self.ticked.clear()
        return fired


@pytest.fixture
def recorder():
    return TickRecorder()


@pytest.fixture
def scheduler(recorder):
    s = PollingScheduler(recorder, foreground_interval=60, background_interval=600)
    yield s
    s.stop(timeout=2)


# ── modes & intervals ──────────────────────────────────────────────────────

class TestModes:
    def test_visibility_mapping(self):
        assert mode_for_visibility(True, False) == FOREGROUND
        assert mode_for_visibility(False, True) == FOREGROUND
        assert mode_for_visibility(False, False) == BACKGROUND

    def test_intervals_are_clamped(self, recorder):
        s = PollingScheduler(recorder, foreground_interval=0.1, background_interval=1)
        assert s.foreground_interval == MIN_FOREGROUND_INTERVAL
        assert s.background_interval == MIN_BACKGROUND_INTERVAL

    def test_mode_selects_interval(self, scheduler):
        assert scheduler.next_interval() == 600
        scheduler.set_mode(FOREGROUND)
        assert scheduler.next_interval() == 60

    def test_unknown_mode(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.set_mode("turbo")

    def test_update_intervals(self, scheduler):
        scheduler.update_intervals(1, 20)
        assert scheduler.foreground_interval == MIN_FOREGROUND_INTERVAL
        assert scheduler.background_interval == 20


# ── lifecycle ──────────────────────────────────────────────────────────────

class TestLifecycle:
    def test_first_tick_is_immediate(self, scheduler, recorder):
        scheduler.start()
        assert recorder.wait()
        assert scheduler.is_running

    def test_start_is_idempotent(self, scheduler, recorder):
        scheduler.start()
        thread = scheduler._thread
        scheduler.start()
        assert scheduler._thread is thread
        recorder.wait()
        time.sleep(0.1)
        assert recorder.count == 1

    def test_stop(self, scheduler, recorder):
        scheduler.start()
        recorder.wait()
        scheduler.stop(timeout=2)
        assert not scheduler.is_running

    def test_restart_after_stop(self, scheduler, recorder):
        scheduler.start()
        recorder.wait()
        scheduler.stop(timeout=2)
        scheduler.start()
        assert recorder.wait()
        assert recorder.count == 2

    def test_mode_change_does_not_tick_early(self, scheduler, recorder):
        scheduler.start()
        recorder.wait()
        scheduler.set_mode(FOREGROUND)
        time.sleep(0.2)
        assert recorder.count == 1


# ── triggers ───────────────────────────────────────────────────────────────

class TestTriggerNow:
    def test_trigger_while_running(self, scheduler, recorder):
        scheduler.start()
        recorder.wait()
        scheduler.trigger_now()
        assert recorder.wait()
        assert recorder.count == 2

    def test_trigger_while_stopped_runs_inline(self, scheduler, recorder):
        scheduler.trigger_now()
        assert recorder.count == 1
        assert scheduler.tick_count == 1

    def test_tick_errors_are_contained(self):
        def boom():
            raise RuntimeError("boom")
        s = PollingScheduler(boom)
        s.trigger_now()
        assert s.tick_count == 1
