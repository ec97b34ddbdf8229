"""
Cancellable repeating timers for display tickers and log polling.

Each timer runs its callback on a daemon thread every ``interval`` seconds
until cancelled. Timers only read state; they never write to the store.
"""

import logging
import threading
from typing import Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class RepeatingTimer:
    """
    Call ``callback`` every ``interval`` seconds on a background thread.

    ``cancel()`` takes effect immediately: no callback starts after it
    returns (one already in progress is allowed to finish).
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "timer"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "RepeatingTimer":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set() and self._thread.is_alive()

    def _run(self) -> None:
        # Event.wait doubles as an interruptible sleep
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                logger.error(f"Timer {self.name} callback failed: {e}", exc_info=True)


class TimerRegistry:
    """Named timers; starting a name again replaces (cancels) the old timer."""

    def __init__(self) -> None:
        self._timers: Dict[Hashable, RepeatingTimer] = {}
        self._lock = threading.Lock()

    def start(self, name: Hashable, interval: float, callback: Callable[[], None]) -> RepeatingTimer:
        timer = RepeatingTimer(interval, callback, name=str(name))
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = timer
        if previous is not None:
            previous.cancel()
        return timer.start()

    def cancel(self, name: Hashable) -> bool:
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._timers

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
