from __future__ import annotations

import threading
import time

import allure
import pytest

from analysis_queue.queue.dispatcher import SweepSummary
from analysis_queue.queue.scheduler import (
    CALENDAR_TRIGGER,
    INITIAL_TRIGGER,
    INTERVAL_TRIGGER,
    SweepScheduler,
    seconds_until_next_boundary,
)

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Sweep Scheduling"),
]


class _CountingSweeper:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def run_sweep(self) -> SweepSummary:
        with self._lock:
            self.calls += 1
        if self.fail:
            raise RuntimeError("sweep exploded")
        return SweepSummary()


@pytest.mark.parametrize(
    ("now", "period", "expected"),
    [
        (125.0, 60, 55.0),
        (120.0, 60, 60.0),
        (179.75, 60, 0.25),
        (0.5, 1, 0.5),
    ],
)
def test_seconds_until_next_boundary(now: float, period: float, expected: float) -> None:
    assert seconds_until_next_boundary(now, period) == pytest.approx(expected)


def test_seconds_until_next_boundary_rejects_non_positive_period() -> None:
    with pytest.raises(ValueError, match="period"):
        seconds_until_next_boundary(10.0, 0)


def test_scheduler_runs_all_triggers_until_stopped() -> None:
    sweeper = _CountingSweeper()
    scheduler = SweepScheduler(
        sweeper,
        interval_seconds=0.05,
        calendar_period_seconds=0.05,
        initial_delay_seconds=0,
    )

    with scheduler:
        assert scheduler.is_running
        time.sleep(0.4)

    assert not scheduler.is_running
    assert scheduler.trigger_counts[INITIAL_TRIGGER] == 1
    assert scheduler.trigger_counts[INTERVAL_TRIGGER] >= 2
    assert scheduler.trigger_counts[CALENDAR_TRIGGER] >= 2
    assert sweeper.calls == sum(scheduler.trigger_counts.values())

    calls_after_stop = sweeper.calls
    time.sleep(0.15)
    assert sweeper.calls == calls_after_stop


def test_failing_sweep_does_not_stop_triggers() -> None:
    sweeper = _CountingSweeper(fail=True)
    scheduler = SweepScheduler(
        sweeper,
        interval_seconds=0.05,
        calendar_period_seconds=60,
        initial_delay_seconds=0,
    )

    with scheduler:
        time.sleep(0.3)

    assert scheduler.trigger_counts[INTERVAL_TRIGGER] >= 2
    assert sweeper.calls >= 3


def test_initial_sweep_waits_for_delay() -> None:
    sweeper = _CountingSweeper()
    scheduler = SweepScheduler(
        sweeper,
        interval_seconds=60,
        calendar_period_seconds=60,
        initial_delay_seconds=30,
    )

    with scheduler:
        time.sleep(0.1)

    assert scheduler.trigger_counts[INITIAL_TRIGGER] == 0


def test_wait_returns_after_timeout_without_stop() -> None:
    scheduler = SweepScheduler(_CountingSweeper(), initial_delay_seconds=60)
    with scheduler:
        assert scheduler.wait(timeout=0.05) is False


def test_start_twice_is_rejected() -> None:
    scheduler = SweepScheduler(_CountingSweeper(), initial_delay_seconds=60)
    with scheduler:
        with pytest.raises(RuntimeError, match="already running"):
            scheduler.start()


def test_calendar_trigger_fires_once_per_boundary_after_early_wake() -> None:
    sweeper = _CountingSweeper()
    scheduler = SweepScheduler(
        sweeper,
        interval_seconds=60,
        calendar_period_seconds=60,
        initial_delay_seconds=60,
        clock=lambda: 59.99,
    )

    with scheduler:
        time.sleep(0.3)

    assert scheduler.trigger_counts[CALENDAR_TRIGGER] == 1
    assert sweeper.calls == 1
