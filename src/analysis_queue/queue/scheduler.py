"""Timer threads that trigger dispatcher sweeps."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from typing import Protocol

from analysis_queue.queue.dispatcher import SweepSummary

logger = logging.getLogger(__name__)

INTERVAL_TRIGGER = "interval"
CALENDAR_TRIGGER = "calendar"
INITIAL_TRIGGER = "initial"


class Sweeper(Protocol):
    def run_sweep(self) -> SweepSummary: ...


def seconds_until_next_boundary(now: float, period: float) -> float:
    """Seconds from `now` (epoch seconds) to the next multiple of `period`.

    The result is in the half-open range (0, period]: at an exact boundary the
    following one is returned, so a trigger never fires twice for one boundary.
    """

    if period <= 0:
        raise ValueError(f"period must be positive, got {period}.")
    remainder = now % period
    return period - remainder if remainder > 0 else float(period)


class SweepScheduler:
    """Runs the fixed-interval, calendar-aligned and initial sweep triggers.

    All triggers call the same guarded `run_sweep()`, so overlapping firings
    are skipped by the dispatcher rather than queued.
    """

    def __init__(
        self,
        dispatcher: Sweeper,
        *,
        interval_seconds: float = 30.0,
        calendar_period_seconds: float = 60,
        initial_delay_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        if calendar_period_seconds <= 0:
            raise ValueError("calendar_period_seconds must be > 0.")
        if initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0.")
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.calendar_period_seconds = calendar_period_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.trigger_counts: Counter[str] = Counter()
        self._clock = clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._counts_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Sweep scheduler is already running.")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._interval_loop, daemon=True, name="sweep-interval"),
            threading.Thread(target=self._calendar_loop, daemon=True, name="sweep-calendar"),
            threading.Thread(target=self._initial_sweep, daemon=True, name="sweep-initial"),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Sweep scheduler started: interval=%ss calendar_period=%ss initial_delay=%ss",
            self.interval_seconds,
            self.calendar_period_seconds,
            self.initial_delay_seconds,
        )

    def stop(self, timeout: float = 15.0) -> None:
        """Signal all triggers to stop and join their threads."""

        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Sweep scheduler stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until `stop()` is called or `timeout` elapses."""

        return self._stop.wait(timeout=timeout)

    def __enter__(self) -> SweepScheduler:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def _interval_loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self._trigger(INTERVAL_TRIGGER)

    def _calendar_loop(self) -> None:
        period = self.calendar_period_seconds
        last_boundary: int | None = None
        while True:
            now = self._clock()
            delay = seconds_until_next_boundary(now, period)
            boundary = round((now + delay) / period)
            # a wait that woke just before its boundary must not fire it again
            if boundary == last_boundary:
                delay += period
                boundary += 1
            if self._stop.wait(timeout=delay):
                return
            self._trigger(CALENDAR_TRIGGER)
            last_boundary = boundary

    def _initial_sweep(self) -> None:
        if not self._stop.wait(timeout=self.initial_delay_seconds):
            self._trigger(INITIAL_TRIGGER)

    def _trigger(self, name: str) -> None:
        with self._counts_lock:
            self.trigger_counts[name] += 1
        try:
            summary = self.dispatcher.run_sweep()
        except Exception:
            logger.exception("Sweep triggered by %s timer failed", name)
            return
        if summary.skipped:
            logger.debug("Sweep triggered by %s timer skipped: another sweep is running", name)
