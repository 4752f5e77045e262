"""Unit tests for Debouncer."""

import threading
import time

import pytest

from services.scheduler import Debouncer


class Counter:
    def __init__(self):
        self.calls = 0
        self.fired = threading.Event()

    def __call__(self):
        self.calls += 1
        self.fired.set()


class TestDebouncerInit:
    """Tests for Debouncer initialization."""

    def test_init_without_action_raises(self):
        with pytest.raises(ValueError, match="action is required"):
            Debouncer(None, 0.1)

    def test_init_negative_delay_raises(self):
        with pytest.raises(ValueError, match="delay must be non-negative"):
            Debouncer(Counter(), -1)

    def test_not_pending_initially(self):
        assert not Debouncer(Counter(), 0.1).pending


class TestSchedule:
    """Tests for schedule and the quiet period."""

    def test_fires_after_delay(self):
        counter = Counter()
        debouncer = Debouncer(counter, 0.05)
        debouncer.schedule()
        assert debouncer.pending
        assert counter.fired.wait(2.0)
        time.sleep(0.05)
        assert counter.calls == 1
        assert not debouncer.pending

    def test_burst_coalesces_into_one_run(self):
        counter = Counter()
        debouncer = Debouncer(counter, 0.5)
        for _ in range(10):
            debouncer.schedule()
            time.sleep(0.01)
        assert counter.calls == 0
        assert counter.fired.wait(2.0)
        time.sleep(0.3)
        assert counter.calls == 1

    def test_cancel_prevents_run(self):
        counter = Counter()
        debouncer = Debouncer(counter, 0.05)
        debouncer.schedule()
        debouncer.cancel()
        time.sleep(0.15)
        assert counter.calls == 0
        assert not debouncer.pending


class TestFlush:
    """Tests for flush and close."""

    def test_flush_runs_pending_action_now(self):
        counter = Counter()
        debouncer = Debouncer(counter, 10.0)
        debouncer.schedule()
        assert debouncer.flush() is True
        assert counter.calls == 1
        assert not debouncer.pending

    def test_flush_without_pending_returns_false(self):
        counter = Counter()
        debouncer = Debouncer(counter, 10.0)
        assert debouncer.flush() is False
        assert counter.calls == 0

    def test_close_runs_pending_and_refuses_new_schedules(self):
        counter = Counter()
        debouncer = Debouncer(counter, 10.0)
        debouncer.schedule()
        debouncer.close()
        assert counter.calls == 1

        debouncer.schedule()
        assert not debouncer.pending

    def test_action_failure_is_contained(self):
        def boom():
            raise RuntimeError("boom")

        debouncer = Debouncer(boom, 10.0)
        debouncer.schedule()
        assert debouncer.flush() is True
