"""
In-memory working set of a session's answers.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Answer


class AnswerStore:
    """
    Answers of one session keyed by question id, last write wins.

    Every upsert bumps a version counter so a flush can record which state
    it confirmed; the store is dirty while unconfirmed writes exist.
    """

    def __init__(self, answers: Iterable[Answer] = ()):
        self._answers: Dict[str, Answer] = {}
        self._lock = threading.Lock()
        self._version = 0
        self._flushed_version = 0
        for answer in answers:
            self._answers[answer.question_id] = answer

    def upsert(self, answer: Answer) -> int:
        """Insert or replace the answer for its question. Returns the new version."""
        with self._lock:
            self._answers[answer.question_id] = answer
            self._version += 1
            return self._version

    def get(self, question_id: str) -> Optional[Answer]:
        with self._lock:
            return self._answers.get(question_id)

    def values(self) -> List[Answer]:
        with self._lock:
            return list(self._answers.values())

    def snapshot(self) -> Tuple[int, List[Answer]]:
        """Current version and answers, taken atomically."""
        with self._lock:
            return self._version, list(self._answers.values())

    def mark_flushed(self, version: int):
        """Record that the state at ``version`` reached the remote store."""
        with self._lock:
            self._flushed_version = max(self._flushed_version, version)

    @property
    def is_dirty(self) -> bool:
        with self._lock:
            return self._version > self._flushed_version

    def answered_count(self) -> int:
        """Number of questions with a non-empty answer."""
        with self._lock:
            return sum(1 for answer in self._answers.values() if not answer.is_empty())

    def __len__(self) -> int:
        with self._lock:
            return len(self._answers)

    def __contains__(self, question_id: str) -> bool:
        with self._lock:
            return question_id in self._answers
