"""
Clocks, session countdowns and periodic background tasks.

The session timer and the autosave loop are both PeriodicTask instances
driven by a Clock; ManualClock lets every step be replayed in a single
thread by advancing time and calling tick()/run_pending() directly.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Clock:
    """Source of wall-clock time (deadlines) and monotonic time (scheduling)."""

    def now(self) -> datetime:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._monotonic = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float):
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._monotonic += seconds


class SessionClock:
    """
    Countdown to a session's absolute deadline.

    The remaining time is recomputed from ``deadline_at - now`` on every
    call. When it reaches zero, tick() invokes on_timeout exactly once no
    matter how many threads tick concurrently.
    """

    def __init__(self, deadline_at: datetime, clock: Clock, on_timeout: Callable[[], None]):
        self.deadline_at = deadline_at
        self.clock = clock
        self._on_timeout = on_timeout
        self._fired = False
        self._lock = threading.Lock()

    def remaining(self) -> timedelta:
        """Get the remaining time as a timedelta."""
        return max(self.deadline_at - self.clock.now(), timedelta(0))

    def remaining_seconds(self) -> int:
        return int(self.remaining().total_seconds())

    def is_expired(self) -> bool:
        return self.remaining() <= timedelta(0)

    def format_remaining(self) -> str:
        """Format remaining time as HH:MM:SS."""
        total_seconds = self.remaining_seconds()
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    @property
    def fired(self) -> bool:
        return self._fired

    def tick(self) -> bool:
        """
        Check the deadline.

        Returns:
            True if this call fired the timeout
        """
        if not self.is_expired():
            return False
        with self._lock:
            if self._fired:
                return False
            self._fired = True
        self._on_timeout()
        return True


class PeriodicTask:
    """Runs an action every ``interval`` seconds of the given clock."""

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[], None],
        clock: Clock,
        poll_interval: Optional[float] = None
    ):
        self.name = name
        self.interval = interval
        self.action = action
        self.clock = clock
        self.poll_interval = poll_interval if poll_interval is not None else min(interval, 1.0)
        self._next_due = clock.monotonic() + interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_pending(self) -> bool:
        """
        Run the action if its period has elapsed.

        Returns:
            True if the action ran
        """
        if self.clock.monotonic() < self._next_due:
            return False
        self._next_due = self.clock.monotonic() + self.interval
        self.action()
        return True

    def _run(self):
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            self._stop.wait(self.poll_interval)

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0):
        self._stop.set()
        thread = self._thread
        # The action may stop its own task (e.g. the timer submitting the session)
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()
