"""
Session lifecycle manager.

Owns the session state machine (pending -> in-progress -> completed or
expired), the in-memory answer working set, the countdown that auto-submits
on timeout and the periodic autosave. Submission flushes the answers,
closes the session remotely, grades it and stores the Result exactly once
per session.
"""

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .answer_store import AnswerStore
from .audit import EventLog
from .clock import Clock, SystemClock, SessionClock, PeriodicTask
from .content import ContentProvider
from .errors import NotFoundError, StateError, TransientIOError, ValidationError
from .grader import Grader
from .models import (
    Session, Test, Question, Answer, Result, EngineConfig, build_answer_value,
    PENDING, IN_PROGRESS, COMPLETED, EXPIRED, ACTIVE_STATUSES, TERMINAL_STATUSES,
    MANUAL, TIMEOUT,
)
from .rubric import ReviewQueue
from .store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class StartOutcome:
    """Session returned by start(); resumed tells the caller it was already running."""
    session: Session
    resumed: bool


@dataclass
class SessionView:
    """What a UI needs to display about a running session."""
    session_id: str
    status: str
    remaining_seconds: int
    remaining_display: str
    answered: int
    total_questions: int
    progress_percentage: int


class SessionHandle:
    """
    In-process state of one session.

    All access to a session goes through its handle: ``lock`` guards status
    and answers, ``persist_lock`` keeps a single flush in flight and
    ``submit_lock`` makes the terminal transition and grading happen once.
    """

    def __init__(self, session: Session, test: Test, questions: List[Question], event_log: EventLog):
        self.session = dataclasses.replace(session, answers=[])
        self.test = test
        self.questions = questions
        self.question_index: Dict[str, Question] = {q.question_id: q for q in questions}
        self.answers = AnswerStore(a for a in session.answers if a.question_id in self.question_index)
        self.event_log = event_log

        self.lock = threading.RLock()
        self.persist_lock = threading.Lock()
        self.submit_lock = threading.Lock()

        self.result: Optional[Result] = None
        self.cause: Optional[str] = None
        self.remote_submitted = session.is_terminal
        # submit_session was called but its outcome is unknown until confirmed
        self.submit_sent = False
        self.needs_reconcile = False

        self.clock: Optional[SessionClock] = None
        self.tasks: List[PeriodicTask] = []

        dropped = len(session.answers) - len(self.answers)
        if dropped:
            logger.warning(
                "Session %s: %d stored answer(s) reference no question of test %s",
                session.session_id, dropped, test.test_id
            )

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def snapshot(self) -> Session:
        """Copy of the session with its current answers."""
        with self.lock:
            return dataclasses.replace(self.session, answers=self.answers.values())


class SessionManager:
    """Starts, tracks and submits exam sessions."""

    def __init__(
        self,
        content: ContentProvider,
        store: SessionStore,
        config: Optional[EngineConfig] = None,
        grader: Optional[Grader] = None,
        clock: Optional[Clock] = None,
        review_queue: Optional[ReviewQueue] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            content: Source of tests and questions
            store: Remote session/result store
            config: Engine policy; defaults to EngineConfig.default()
            grader: Grading engine; defaults to one built from config
            clock: Time source for deadlines and background tasks
            review_queue: Receives results that need a reviewer
            sleep: Used between retries of remote calls
        """
        self.content = content
        self.store = store
        self.config = config or EngineConfig.default()
        self.grader = grader or Grader(self.config)
        self.clock = clock or SystemClock()
        self.review_queue = review_queue if review_queue is not None else ReviewQueue.from_store(store)
        self._sleep = sleep

        self._handles: Dict[str, SessionHandle] = {}
        self._handles_lock = threading.Lock()
        self._start_lock = threading.Lock()

    # ===== HANDLES =====

    def _load_questions(self, test: Test) -> List[Question]:
        questions = []
        for section in sorted(test.sections, key=lambda s: s.number):
            questions.extend(self.content.get_questions(section.section_id))
        return questions

    def _attach(self, session: Session, test: Test, questions: List[Question]) -> SessionHandle:
        """Handle of a session; finished sessions are not kept attached."""
        with self._handles_lock:
            handle = self._handles.get(session.session_id)
            if handle is not None:
                return handle
            event_log = EventLog.for_session(session.session_id, self.config.event_log_dir, self.clock)
            handle = SessionHandle(session, test, questions, event_log)
            handle.clock = SessionClock(
                session.deadline_at, self.clock,
                on_timeout=lambda: self._on_timeout(session.session_id)
            )
            if not session.is_terminal:
                self._handles[session.session_id] = handle
            return handle

    def _release(self, handle: SessionHandle):
        with self._handles_lock:
            if self._handles.get(handle.session_id) is handle:
                del self._handles[handle.session_id]

    def _handle(self, session_id: str) -> SessionHandle:
        """Handle of a session, loading it from the store if not attached yet."""
        with self._handles_lock:
            handle = self._handles.get(session_id)
        if handle is not None:
            return handle
        session = self.store.get_session(session_id)
        test = self.content.get_test(session.test_id)
        return self._attach(session, test, self._load_questions(test))

    # ===== START / RESUME =====

    def start(self, test_id: str, user_id: str, watch: bool = False) -> StartOutcome:
        """
        Start a test, or resume the user's active session for it.

        An active session whose deadline already passed is submitted as
        timed out and a fresh session is created in its place.

        Args:
            test_id: Test to take
            user_id: Student
            watch: Also start the background timer and autosave tasks

        Returns:
            StartOutcome with the session and whether it was resumed
        """
        test = self.content.get_test(test_id)
        if test.duration_minutes <= 0:
            raise ValidationError(f"Test '{test_id}' has no valid duration")
        questions = self._load_questions(test)

        with self._start_lock:
            outcome = None
            existing = self.store.find_active_session(user_id, test_id)

            if existing is not None:
                handle = self._attach(existing, test, questions)
                if handle.session.status == PENDING:
                    outcome = StartOutcome(self._begin(handle), resumed=False)
                elif handle.clock.is_expired():
                    handle.event_log.log("EXAM_EXPIRED_ON_RESUME", "Deadline passed while away")
                    self.submit(handle.session_id, TIMEOUT)
                else:
                    remaining = handle.clock.format_remaining()
                    handle.event_log.log("EXAM_RESUME", f"{remaining} remaining")
                    outcome = StartOutcome(handle.snapshot(), resumed=True)

            if outcome is None:
                now = self.clock.now()
                session = self.store.start_session(test_id, user_id, now, now + test.duration)
                handle = self._attach(session, test, questions)
                handle.event_log.log(
                    "EXAM_START",
                    f"Test {test_id} for user {user_id}, duration: {test.duration_minutes} minutes"
                )
                outcome = StartOutcome(handle.snapshot(), resumed=False)

        if watch:
            self.watch(outcome.session.session_id)
        return outcome

    def _begin(self, handle: SessionHandle) -> Session:
        """Move a pending session to in-progress; its deadline starts now."""
        with handle.lock:
            now = self.clock.now()
            handle.session.status = IN_PROGRESS
            handle.session.started_at = now
            handle.session.deadline_at = now + handle.test.duration
            handle.clock.deadline_at = handle.session.deadline_at
            self.store.update_session(handle.session)
        handle.event_log.log("EXAM_START", f"Pending session started, duration: {handle.test.duration_minutes} minutes")
        return handle.snapshot()

    # ===== ANSWERS =====

    def record_answer(
        self,
        session_id: str,
        question_id: str,
        value: Any,
        time_spent: int = 0
    ) -> SessionView:
        """
        Store an answer in the session's working set (not yet remote).

        Raises:
            NotFoundError: Unknown session or question
            ValidationError: Value shape does not fit the question type
            StateError: Session not in progress, or its time is over
        """
        handle = self._handle(session_id)
        with handle.lock:
            self._require_in_progress(handle)
        question = handle.question_index.get(question_id)
        if question is None:
            raise NotFoundError(f"Question '{question_id}' is not part of this test")
        answer_value = build_answer_value(question.question_type, value)

        with handle.lock:
            self._require_in_progress(handle)
            expired = handle.clock.is_expired()
            if not expired:
                handle.answers.upsert(Answer(
                    question_id=question_id,
                    value=answer_value,
                    time_spent=time_spent,
                    answered_at=self.clock.now(),
                ))

        if expired:
            handle.clock.tick()
            raise StateError(f"Session '{session_id}' has run out of time")
        return self.status(session_id)

    def _require_in_progress(self, handle: SessionHandle):
        if handle.session.status != IN_PROGRESS:
            raise StateError(
                f"Session '{handle.session_id}' is {handle.session.status}, not {IN_PROGRESS}"
            )

    # ===== TRACKING =====

    def _track(self, handle: SessionHandle, **fields):
        """Store tracking fields of an in-progress session, then apply them locally."""
        fields["last_activity_at"] = self.clock.now()
        self.store.update_tracking(handle.session_id, fields)
        for key, value in fields.items():
            setattr(handle.session, key, value)

    def track_tab_switch(self, session_id: str) -> Session:
        """
        Count a switch away from the exam tab.

        The session is flagged for review once the count reaches
        tab_switch_flag_threshold; the flag is never cleared.
        """
        handle = self._handle(session_id)
        with handle.lock:
            self._require_in_progress(handle)
            count = handle.session.tab_switch_count + 1
            newly_flagged = (
                not handle.session.flagged_for_review
                and count >= self.config.tab_switch_flag_threshold
            )
            self._track(
                handle,
                tab_switch_count=count,
                flagged_for_review=handle.session.flagged_for_review or newly_flagged,
            )

        handle.event_log.log("TAB_SWITCH", f"Switch {count}")
        if newly_flagged:
            logger.warning("Session %s flagged for review after %d tab switches", session_id, count)
            handle.event_log.log("FLAGGED_FOR_REVIEW", f"{count} tab switches")
        return handle.snapshot()

    def mark_audio_played(self, session_id: str, section_id: str) -> bool:
        """
        Record that a listening section's recording was played.

        Returns:
            True if playback may start, False if it was already played
        """
        handle = self._handle(session_id)
        if handle.test.module != "listening":
            raise ValidationError(f"Test '{handle.test.test_id}' has no recordings")
        if section_id not in {s.section_id for s in handle.test.sections}:
            raise NotFoundError(f"Section '{section_id}' is not part of this test")

        with handle.lock:
            self._require_in_progress(handle)
            played = handle.session.audio_played_sections
            if section_id in played:
                handle.event_log.log("AUDIO_REPLAY_BLOCKED", f"Section {section_id}")
                return False
            self._track(handle, audio_played_sections=played + [section_id])

        handle.event_log.log("AUDIO_PLAYED", f"Section {section_id}")
        return True

    def update_progress(
        self,
        session_id: str,
        section_number: Optional[int] = None,
        question_index: Optional[int] = None
    ) -> Session:
        """
        Store where the student is, so a resumed session opens there.

        Args:
            section_number: Section number as listed in the test
            question_index: Zero-based position within that section
        """
        handle = self._handle(session_id)
        with handle.lock:
            self._require_in_progress(handle)
            number = section_number if section_number is not None else handle.session.current_section_number
            index = question_index if question_index is not None else handle.session.current_question_index

            section = next((s for s in handle.test.sections if s.number == number), None)
            if section is None:
                raise ValidationError(f"Test '{handle.test.test_id}' has no section {number}")
            in_section = [q for q in handle.questions if q.section_id == section.section_id]
            if not 0 <= index < max(len(in_section), 1):
                raise ValidationError(f"Section {number} has no question at index {index}")

            self._track(handle, current_section_number=number, current_question_index=index)
            return handle.snapshot()

    # ===== PERSISTENCE =====

    def persist(self, session_id: str) -> bool:
        """
        Best-effort flush of all current answers to the store.

        A transient store failure is logged and reported as False; the next
        autosave retries with the latest state.
        """
        handle = self._handle(session_id)
        with handle.lock:
            self._require_in_progress(handle)
        try:
            self._flush(handle, attempts=1)
        except TransientIOError as e:
            logger.warning("Autosave of session %s failed: %s", session_id, e)
            handle.event_log.log("AUTOSAVE_FAILED", str(e))
            return False
        return True

    def _flush(self, handle: SessionHandle, attempts: int):
        # Snapshot inside persist_lock so a flush that waited for an
        # in-flight one still sends the newest answers.
        with handle.persist_lock:
            version, answers = handle.answers.snapshot()
            self._with_retry(
                "save answers", attempts,
                self.store.save_answers, handle.session_id, answers
            )
            handle.answers.mark_flushed(version)

    def _with_retry(self, description: str, attempts: int, func: Callable, *args):
        delay = self.config.persist_retry_delay_seconds
        for attempt in range(1, attempts + 1):
            try:
                return func(*args)
            except TransientIOError as e:
                if attempt == attempts:
                    raise
                logger.info(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description, attempt, attempts, e, delay
                )
                self._sleep(delay)
                delay *= 2

    # ===== SUBMISSION =====

    def submit(self, session_id: str, cause: str = MANUAL) -> Result:
        """
        Finish a session and grade it.

        Manual submission completes the session, timeout expires it; both
        are graded the same way. Submitting a finished session returns its
        existing Result.

        Args:
            session_id: Session to submit
            cause: MANUAL or TIMEOUT

        Returns:
            The session's Result

        Raises:
            StateError: Session was never started
            TransientIOError: The store could not be reached. A manual
                submission that never closed the session remotely stays in
                progress and can be retried; otherwise the session stays
                finished locally until reconciled.
        """
        if cause not in (MANUAL, TIMEOUT):
            raise ValidationError(f"Unknown submission cause '{cause}'")
        handle = self._handle(session_id)

        with handle.submit_lock:
            if handle.result is not None:
                return handle.result

            first_transition = False
            with handle.lock:
                status = handle.session.status
                if status in TERMINAL_STATUSES:
                    cause = handle.cause or (TIMEOUT if status == EXPIRED else MANUAL)
                elif status != IN_PROGRESS:
                    raise StateError(f"Session '{session_id}' is {status}; it cannot be submitted")
                else:
                    handle.session.status = EXPIRED if cause == TIMEOUT else COMPLETED
                    handle.session.completed_at = self.clock.now()
                    handle.cause = cause
                    first_transition = True

            if not first_transition and not handle.needs_reconcile:
                existing = self.store.find_result(session_id)
                if existing is not None:
                    handle.result = existing
                    if existing.is_pending_review:
                        self.review_queue.add(existing)
                    self._stop_tasks(handle)
                    self._release(handle)
                    return existing

            if first_transition:
                event = "SESSION_TIMEOUT" if cause == TIMEOUT else "SESSION_SUBMIT"
                handle.event_log.log(event, f"{handle.answers.answered_count()} answered")

            try:
                self._finalize(handle)
            except TransientIOError as e:
                if cause == MANUAL and not handle.remote_submitted and self._may_reopen(handle):
                    with handle.lock:
                        handle.session.status = IN_PROGRESS
                        handle.session.completed_at = None
                        handle.cause = None
                    handle.event_log.log("SUBMIT_FAILED", str(e))
                else:
                    handle.needs_reconcile = True
                    handle.event_log.log("RECONCILE_PENDING", str(e))
                raise

            handle.needs_reconcile = False
            self._release(handle)
            return handle.result

    def _may_reopen(self, handle: SessionHandle) -> bool:
        """Whether a failed manual submission can go back to in-progress."""
        if not handle.submit_sent:
            return True
        closed = self._remote_closed(handle)
        if closed:
            handle.remote_submitted = True
        if closed is False:
            handle.submit_sent = False
            return True
        return False

    def _remote_closed(self, handle: SessionHandle) -> Optional[bool]:
        """Whether the store already has the session finished; None if it cannot be reached."""
        try:
            return self.store.get_session(handle.session_id).is_terminal
        except TransientIOError as e:
            logger.info("Could not check remote state of session %s: %s", handle.session_id, e)
            return None

    def _finalize(self, handle: SessionHandle):
        """Final flush, remote close, grading and result creation."""
        attempts = self.config.persist_retry_attempts
        if not handle.remote_submitted and handle.submit_sent and self._remote_closed(handle):
            # An earlier close went through but its reply was lost
            handle.remote_submitted = True

        if not handle.remote_submitted:
            try:
                self._flush(handle, attempts)
            except StateError:
                if not self._remote_closed(handle):
                    raise
                logger.warning("Session %s was already closed in the store", handle.session_id)
                handle.remote_submitted = True

        if not handle.remote_submitted:
            handle.submit_sent = True
            self._with_retry(
                "submit session", attempts, self.store.submit_session,
                handle.session_id, handle.session.status, handle.session.completed_at
            )
            handle.remote_submitted = True

        session = handle.snapshot()
        result = self.grader.grade(session, handle.test, handle.questions)
        result.created_at = self.clock.now()
        result = self._with_retry("create result", attempts, self.store.create_result, result)
        handle.result = result

        if result.is_pending_review:
            self.review_queue.add(result)
        summary = (
            "pending review" if result.is_manually_graded
            else f"band {result.band_score}, {result.percentage}%"
        )
        handle.event_log.log("SESSION_FINISH", f"Result {result.result_id}: {summary}")
        self._stop_tasks(handle)

    def _on_timeout(self, session_id: str):
        try:
            self.submit(session_id, TIMEOUT)
        except TransientIOError as e:
            logger.warning("Timeout submission of session %s deferred: %s", session_id, e)

    def reconcile(self, session_id: str) -> Optional[Result]:
        """
        Retry a submission that failed after the session was closed locally.

        Returns:
            The Result, or None if the session has nothing to reconcile
        """
        handle = self._handle(session_id)
        if handle.result is not None:
            return handle.result
        if not handle.needs_reconcile:
            if handle.session.is_terminal:
                return self.store.find_result(session_id)
            return None
        handle.event_log.log("RECONCILE", "Retrying submission")
        return self.submit(session_id, handle.cause or TIMEOUT)

    # ===== BACKGROUND TASKS =====

    def watch(self, session_id: str):
        """Start the countdown and autosave tasks of a session."""
        handle = self._handle(session_id)
        with handle.lock:
            if handle.tasks or handle.result is not None:
                return
            if handle.session.is_terminal and not handle.needs_reconcile:
                return
            handle.tasks = [
                PeriodicTask(
                    f"timer-{session_id}", self.config.clock_tick_seconds,
                    handle.clock.tick, self.clock
                ),
                PeriodicTask(
                    f"autosave-{session_id}", self.config.autosave_interval_seconds,
                    lambda: self._autosave(handle), self.clock
                ),
            ]
        for task in handle.tasks:
            task.start()

    def _autosave(self, handle: SessionHandle):
        """One autosave cycle; also retries pending reconciliation."""
        if handle.needs_reconcile:
            try:
                self.reconcile(handle.session_id)
            except TransientIOError as e:
                logger.info("Session %s still not reconciled: %s", handle.session_id, e)
            return
        with handle.lock:
            if handle.session.status != IN_PROGRESS or not handle.answers.is_dirty:
                return
        try:
            self.persist(handle.session_id)
        except StateError:
            # Submitted between the check and the flush; the final flush covers it
            logger.debug("Autosave of session %s skipped: session closed", handle.session_id)

    def _stop_tasks(self, handle: SessionHandle):
        with handle.lock:
            tasks, handle.tasks = handle.tasks, []
        for task in tasks:
            task.stop()

    def detach(self, session_id: str):
        """
        Stop tracking a session, e.g. when the student navigates away.

        Pending answers are flushed best-effort; the session stays in
        progress and can be resumed with start() until its deadline.
        """
        with self._handles_lock:
            handle = self._handles.get(session_id)
        if handle is None:
            return
        self._stop_tasks(handle)
        with handle.lock:
            flush = handle.session.status == IN_PROGRESS and handle.answers.is_dirty
        if flush:
            self.persist(session_id)
        if handle.needs_reconcile:
            # Keep it attached so reconcile() can still finish it
            return
        with self._handles_lock:
            self._handles.pop(session_id, None)

    def shutdown(self):
        """Detach every tracked session."""
        with self._handles_lock:
            session_ids = list(self._handles)
        for session_id in session_ids:
            self.detach(session_id)

    # ===== QUERIES =====

    def status(self, session_id: str) -> SessionView:
        """Status, remaining time and progress of a session."""
        handle = self._handle(session_id)
        with handle.lock:
            status = handle.session.status
            remaining = 0 if status in TERMINAL_STATUSES else handle.clock.remaining_seconds()
            answered = handle.answers.answered_count()
        total = len(handle.questions)
        hours, rest = divmod(remaining, 3600)
        return SessionView(
            session_id=session_id,
            status=status,
            remaining_seconds=remaining,
            remaining_display=f"{hours:02d}:{rest // 60:02d}:{rest % 60:02d}",
            answered=answered,
            total_questions=total,
            progress_percentage=round(100 * answered / total) if total else 0,
        )

    def get_session(self, session_id: str) -> Session:
        """Current in-process view of a session, including unsaved answers."""
        return self._handle(session_id).snapshot()

    def result(self, session_id: str) -> Optional[Result]:
        """Result of a submitted session, if any."""
        with self._handles_lock:
            handle = self._handles.get(session_id)
        if handle is not None and handle.result is not None:
            return handle.result
        return self.store.find_result(session_id)

    def list_sessions(self, user_id: str, status: Optional[str] = None) -> List[Session]:
        """A student's sessions, newest first, optionally with one status."""
        if status is not None and status not in ACTIVE_STATUSES + TERMINAL_STATUSES:
            raise ValidationError(f"Unknown session status '{status}'")
        return self.store.list_sessions(user_id, status)
