"""
Per-session event log.

Each lifecycle event is appended as ``[YYYY-MM-DD HH:MM:SS] - EVENT - details``
to the session's log file (when a directory is configured) and mirrored to
the module logger.
"""

import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only log of one session's lifecycle events."""

    def __init__(self, session_id: str, log_path: Optional[Path] = None, clock: Optional[Clock] = None):
        self.session_id = session_id
        self.log_path = Path(log_path) if log_path else None
        self.clock = clock or SystemClock()
        self.entries: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    @classmethod
    def for_session(cls, session_id: str, log_dir: Optional[str], clock: Optional[Clock] = None) -> 'EventLog':
        """Event log writing to ``<log_dir>/<session_id>.log``, or memory only."""
        log_path = None
        if log_dir:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            log_path = Path(log_dir) / f"{session_id}.log"
        return cls(session_id, log_path, clock)

    def log(self, event: str, details: str = ""):
        """Append an entry to the session log."""
        timestamp = self.clock.now().strftime("%Y-%m-%d %H:%M:%S")
        log_entry = f"[{timestamp}] - {event}"
        if details:
            log_entry += f" - {details}"

        logger.info("session %s: %s %s", self.session_id, event, details)
        with self._lock:
            self.entries.append((event, details))
            if self.log_path:
                with open(self.log_path, 'a', encoding='utf-8') as f:
                    f.write(log_entry + "\n")

    def events(self) -> List[str]:
        with self._lock:
            return [event for event, _ in self.entries]
