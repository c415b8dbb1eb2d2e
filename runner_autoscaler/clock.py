"""
Time sources for the control loop.

Cooldowns, idle timeouts, backoff sleeps and forecast timestamps all read
time through a Clock so the whole loop can run against simulated time.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Optional


class Clock(ABC):
    """Abstract time source"""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time"""
        pass

    @abstractmethod
    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> bool:
        """
        Wait for the given number of seconds.

        Returns:
            False if the wait was interrupted by the cancel event, True otherwise
        """
        pass


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> bool:
        if seconds <= 0:
            return not (cancel is not None and cancel.is_set())
        if cancel is None:
            cancel = threading.Event()
        return not cancel.wait(seconds)


class ManualClock(Clock):
    """Simulated time that only moves when advanced or slept on"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.total_slept = 0.0

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> bool:
        if cancel is not None and cancel.is_set():
            return False
        if seconds > 0:
            self.advance(seconds)
            with self._lock:
                self.total_slept += seconds
        return True
