"""Timers, debouncing and periodic ticks with an injectable clock."""

import heapq
import itertools
import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Runs each callback on its own daemon timer thread."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.name = "gitpulse-timer"
        timer.start()
        return timer


class _ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler: time only moves when `advance()` is called.

    Due callbacks run synchronously on the thread calling `advance()`, in due
    order, so tests can drive debounce windows and poll intervals without
    sleeping.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._queue: list[tuple[float, int, _ManualTimer]] = []
        self._lock = threading.Lock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        with self._lock:
            timer = _ManualTimer(self.now + delay, callback)
            heapq.heappush(self._queue, (timer.due, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            with self._lock:
                while self._queue and self._queue[0][2].cancelled:
                    heapq.heappop(self._queue)
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, timer = heapq.heappop(self._queue)
                self.now = max(self.now, due)
            timer.callback()
        self.now = target

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, timer in self._queue if not timer.cancelled)


class DebounceState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    RUNNING_DIRTY = "running_dirty"
    CANCELLED = "cancelled"


class Debouncer:
    """Coalesces bursts of `touch()` calls into single runs of `action`.

    A touch while idle or pending (re)starts the quiet period. A touch while
    the action runs is recorded, and the action runs again as soon as the
    current run returns. At most one run is ever in flight.
    """

    def __init__(self, delay: float, action: Callable[[], None], scheduler: Scheduler) -> None:
        self.delay = delay
        self._action = action
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._state = DebounceState.IDLE
        self._timer: TimerHandle | None = None
        self._generation = 0
        self.runs = 0

    @property
    def state(self) -> DebounceState:
        with self._lock:
            return self._state

    def touch(self) -> None:
        with self._lock:
            if self._state is DebounceState.CANCELLED:
                return
            if self._state is DebounceState.RUNNING:
                self._state = DebounceState.RUNNING_DIRTY
                return
            if self._state is DebounceState.RUNNING_DIRTY:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._state = DebounceState.PENDING
            self._timer = self._scheduler.call_later(self.delay, lambda: self._fire(generation))

    def cancel(self) -> None:
        with self._lock:
            self._state = DebounceState.CANCELLED
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._state is not DebounceState.PENDING or generation != self._generation:
                return
            self._timer = None
            self._state = DebounceState.RUNNING
        while True:
            self.runs += 1
            try:
                self._action()
            except Exception:
                logger.exception("Debounced action failed")
            with self._lock:
                if self._state is DebounceState.RUNNING_DIRTY:
                    self._state = DebounceState.RUNNING
                    continue
                if self._state is DebounceState.RUNNING:
                    self._state = DebounceState.IDLE
                return


class PeriodicTimer:
    """Calls `callback` every `interval` seconds until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None], scheduler: Scheduler) -> None:
        self.interval = interval
        self._callback = callback
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._timer: TimerHandle | None = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
            self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._active = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _arm(self) -> None:
        self._timer = self._scheduler.call_later(self.interval, self._tick)

    def _tick(self) -> None:
        with self._lock:
            if not self._active:
                return
        try:
            self._callback()
        except Exception:
            logger.exception("Periodic callback failed")
        with self._lock:
            if self._active:
                self._arm()
