"""
Persistence collaborator for sessions and results.

SessionStore defines the request/response calls the engine makes against
the remote data store. InMemoryStore is a thread-safe implementation used
for tests and single-process deployments; JsonFileStore writes the same
records through to JSON files.
"""

import copy
import json
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import NotFoundError, StateError, ValidationError
from .models import Session, Answer, Result, IN_PROGRESS, TERMINAL_STATUSES


class SessionStore(ABC):
    """
    Remote store interface.

    Implementations raise TransientIOError for retryable failures,
    NotFoundError for missing records and StateError when a write is not
    allowed in the record's current state.
    """

    @abstractmethod
    def find_active_session(self, user_id: str, test_id: str) -> Optional[Session]:
        """Pending or in-progress session for the pair, if any."""

    @abstractmethod
    def start_session(self, test_id: str, user_id: str, started_at: datetime, deadline_at: datetime) -> Session:
        """Create an in-progress session. Fails if the pair already has an active one."""

    @abstractmethod
    def get_session(self, session_id: str) -> Session:
        """Session with its stored answers."""

    @abstractmethod
    def update_session(self, session: Session) -> Session:
        """Store status and timing fields of a session (answers untouched)."""

    @abstractmethod
    def update_tracking(self, session_id: str, fields: dict) -> Session:
        """Store resume position, tab switches and audio plays of an in-progress session."""

    @abstractmethod
    def list_sessions(self, user_id: str, status: Optional[str] = None) -> List[Session]:
        """Sessions of a user, newest first, optionally with one status."""

    @abstractmethod
    def save_answers(self, session_id: str, answers: Iterable[Answer]):
        """Idempotent bulk upsert keyed by question id."""

    @abstractmethod
    def submit_session(self, session_id: str, status: str, completed_at: datetime) -> Session:
        """Mark the session terminal."""

    @abstractmethod
    def create_result(self, result: Result) -> Result:
        """Store a result; returns the existing one if the session already has a result."""

    @abstractmethod
    def get_result(self, result_id: str) -> Result:
        """Result by id."""

    @abstractmethod
    def find_result(self, session_id: str) -> Optional[Result]:
        """Result of a session, if created."""

    @abstractmethod
    def grade_result(self, result_id: str, payload: dict) -> Result:
        """Apply reviewer fields to a result."""

    @abstractmethod
    def list_results(self, user_id: Optional[str] = None, module: Optional[str] = None) -> List[Result]:
        """Results filtered by user and module, oldest first."""


class InMemoryStore(SessionStore):
    """Store keeping every record in process memory. Returns copies only."""

    GRADABLE_FIELDS = (
        "band_score", "grading_notes", "graded_by", "reviewed_at",
        "writing_scores", "speaking_scores", "percentage", "is_manually_graded",
    )
    TRACKING_FIELDS = (
        "current_section_number", "current_question_index", "tab_switch_count",
        "flagged_for_review", "audio_played_sections", "last_activity_at",
    )

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._answers: Dict[str, Dict[str, Answer]] = {}
        self._results: Dict[str, Result] = {}
        self._results_by_session: Dict[str, str] = {}

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session '{session_id}' not found")
        return session

    def _with_answers(self, session: Session) -> Session:
        result = copy.deepcopy(session)
        result.answers = copy.deepcopy(list(self._answers.get(session.session_id, {}).values()))
        return result

    # ===== SESSIONS =====

    def find_active_session(self, user_id: str, test_id: str) -> Optional[Session]:
        with self._lock:
            for session in self._sessions.values():
                if session.user_id == user_id and session.test_id == test_id and session.is_active:
                    return self._with_answers(session)
            return None

    def start_session(self, test_id: str, user_id: str, started_at: datetime, deadline_at: datetime) -> Session:
        with self._lock:
            if self.find_active_session(user_id, test_id) is not None:
                raise StateError(f"User '{user_id}' already has an active session for test '{test_id}'")
            session = Session(
                session_id=self._new_id(),
                test_id=test_id,
                user_id=user_id,
                status=IN_PROGRESS,
                started_at=started_at,
                deadline_at=deadline_at,
            )
            self._sessions[session.session_id] = session
            self._answers[session.session_id] = {}
            self._session_changed(session.session_id)
            return self._with_answers(session)

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            return self._with_answers(self._session(session_id))

    def update_session(self, session: Session) -> Session:
        with self._lock:
            stored = self._session(session.session_id)
            stored.status = session.status
            stored.started_at = session.started_at
            stored.deadline_at = session.deadline_at
            stored.completed_at = session.completed_at
            self._session_changed(session.session_id)
            return self._with_answers(stored)

    def update_tracking(self, session_id: str, fields: dict) -> Session:
        unknown = set(fields) - set(self.TRACKING_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be tracked: {', '.join(sorted(unknown))}")
        with self._lock:
            session = self._session(session_id)
            if session.is_terminal:
                raise StateError(f"Session '{session_id}' is {session.status}; tracking is closed")
            for key, value in fields.items():
                setattr(session, key, copy.deepcopy(value))
            self._session_changed(session_id)
            return self._with_answers(session)

    def list_sessions(self, user_id: str, status: Optional[str] = None) -> List[Session]:
        with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if s.user_id == user_id and (status is None or s.status == status)
            ]
            sessions.sort(
                key=lambda s: s.started_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True
            )
            return [self._with_answers(s) for s in sessions]

    def save_answers(self, session_id: str, answers: Iterable[Answer]):
        with self._lock:
            session = self._session(session_id)
            if session.is_terminal:
                raise StateError(f"Session '{session_id}' is {session.status}; answers are closed")
            stored = self._answers[session_id]
            for answer in answers:
                stored[answer.question_id] = copy.deepcopy(answer)
            self._session_changed(session_id)

    def submit_session(self, session_id: str, status: str, completed_at: datetime) -> Session:
        if status not in TERMINAL_STATUSES:
            raise StateError(f"'{status}' is not a terminal status")
        with self._lock:
            session = self._session(session_id)
            if not session.is_terminal:
                session.status = status
                session.completed_at = completed_at
                self._session_changed(session_id)
            return self._with_answers(session)

    # ===== RESULTS =====

    def create_result(self, result: Result) -> Result:
        with self._lock:
            existing_id = self._results_by_session.get(result.session_id)
            if existing_id is not None:
                return copy.deepcopy(self._results[existing_id])
            stored = copy.deepcopy(result)
            stored.result_id = self._new_id()
            if stored.created_at is None:
                stored.created_at = datetime.now(timezone.utc)
            self._results[stored.result_id] = stored
            self._results_by_session[stored.session_id] = stored.result_id
            self._result_changed(stored.result_id)
            return copy.deepcopy(stored)

    def get_result(self, result_id: str) -> Result:
        with self._lock:
            result = self._results.get(result_id)
            if result is None:
                raise NotFoundError(f"Result '{result_id}' not found")
            return copy.deepcopy(result)

    def find_result(self, session_id: str) -> Optional[Result]:
        with self._lock:
            result_id = self._results_by_session.get(session_id)
            return copy.deepcopy(self._results[result_id]) if result_id else None

    def grade_result(self, result_id: str, payload: dict) -> Result:
        unknown = set(payload) - set(self.GRADABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be graded: {', '.join(sorted(unknown))}")
        with self._lock:
            result = self._results.get(result_id)
            if result is None:
                raise NotFoundError(f"Result '{result_id}' not found")
            for key, value in payload.items():
                setattr(result, key, copy.deepcopy(value))
            self._result_changed(result_id)
            return copy.deepcopy(result)

    def list_results(self, user_id: Optional[str] = None, module: Optional[str] = None) -> List[Result]:
        with self._lock:
            results = [
                r for r in self._results.values()
                if (user_id is None or r.user_id == user_id)
                and (module is None or r.module == module)
            ]
            results.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc))
            return copy.deepcopy(results)

    # ===== CHANGE HOOKS =====

    def _session_changed(self, session_id: str):
        """Called with the lock held after a session or its answers changed."""

    def _result_changed(self, result_id: str):
        """Called with the lock held after a result changed."""


class JsonFileStore(InMemoryStore):
    """
    InMemoryStore that writes every change through to JSON files.

    Layout: ``<root>/sessions/<session_id>.json`` (session with embedded
    answers) and ``<root>/results/<result_id>.json``.
    """

    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.results_dir = self.root / "results"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self):
        for path in sorted(self.sessions_dir.glob("*.json")):
            with open(path, 'r', encoding='utf-8') as f:
                session = Session.from_dict(json.load(f))
            self._answers[session.session_id] = {a.question_id: a for a in session.answers}
            session.answers = []
            self._sessions[session.session_id] = session

        for path in sorted(self.results_dir.glob("*.json")):
            with open(path, 'r', encoding='utf-8') as f:
                result = Result.from_dict(json.load(f))
            self._results[result.result_id] = result
            self._results_by_session[result.session_id] = result.result_id

    def _session_changed(self, session_id: str):
        session = self._with_answers(self._sessions[session_id])
        with open(self.sessions_dir / f"{session_id}.json", 'w', encoding='utf-8') as f:
            json.dump(session.to_dict(), f, indent=2)

    def _result_changed(self, result_id: str):
        with open(self.results_dir / f"{result_id}.json", 'w', encoding='utf-8') as f:
            json.dump(self._results[result_id].to_dict(), f, indent=2)
