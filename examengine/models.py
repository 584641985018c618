"""
Data models for exam sessions, questions and results.

Provides type-safe structures for Session, Answer, Question, Test and
Result objects, plus the engine configuration.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Union

from .bands import DEFAULT_BAND, DEFAULT_BAND_TABLE, validate_band_table
from .errors import ValidationError

# Session statuses
PENDING = "pending"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"
EXPIRED = "expired"

ACTIVE_STATUSES = (PENDING, IN_PROGRESS)
TERMINAL_STATUSES = (COMPLETED, EXPIRED)

# Submission causes
MANUAL = "manual"
TIMEOUT = "timeout"

# Item grade statuses
CORRECT = "correct"
PARTIAL = "partial"
INCORRECT = "incorrect"
UNANSWERED = "unanswered"
UNGRADED = "ungraded"

MODULES = ("listening", "reading", "writing", "speaking")

SCALAR_TYPES = (
    "multiple-choice",
    "multiple-choice-multi",
    "true-false-not-given",
    "yes-no-not-given",
    "sentence-completion",
    "summary-completion",
    "note-completion",
    "form-completion",
    "flow-chart-completion",
    "diagram-labeling",
    "short-answer",
)

COMPOSITE_TYPES = (
    "table-completion",
    "matching-headings",
    "matching-information",
    "matching-features",
    "map-labeling",
)

# Free-response prompts of manually graded modules
OPEN_RESPONSE_TYPES = (
    "writing-task",
    "speaking-prompt",
)


def is_composite_type(question_type: str) -> bool:
    return question_type in COMPOSITE_TYPES


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ===== ANSWERS =====

@dataclass(frozen=True)
class ScalarAnswer:
    """A single free-text or option answer."""
    text: str

    def is_empty(self) -> bool:
        return not self.text.strip()

    def to_raw(self) -> str:
        return self.text


@dataclass(frozen=True)
class CompositeAnswer:
    """Sub-answers of a composite question, keyed by sub-item label."""
    parts: Dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(value.strip() for value in self.parts.values())

    def get(self, label: str) -> str:
        return self.parts.get(label, "")

    def to_raw(self) -> Dict[str, str]:
        return dict(self.parts)


AnswerValue = Union[ScalarAnswer, CompositeAnswer]


def build_answer_value(question_type: str, raw: Any) -> AnswerValue:
    """
    Wrap a raw submitted value in the variant the question type declares.

    Args:
        question_type: Declared type of the question being answered
        raw: Value as received from the caller

    Returns:
        ScalarAnswer or CompositeAnswer

    Raises:
        ValidationError: If the value cannot represent an answer of that type
    """
    if is_composite_type(question_type):
        if raw is None:
            return CompositeAnswer({})
        if not isinstance(raw, dict):
            raise ValidationError(
                f"'{question_type}' answers must map sub-item labels to values"
            )
        parts = {}
        for label, value in raw.items():
            if value is None:
                continue
            if isinstance(value, (dict, list, tuple)):
                raise ValidationError(f"Sub-answer '{label}' must be a single value")
            parts[str(label)] = str(value)
        return CompositeAnswer(parts)

    if raw is None:
        return ScalarAnswer("")
    if isinstance(raw, (list, tuple)) and question_type == "multiple-choice-multi":
        return ScalarAnswer(", ".join(str(v) for v in raw))
    if isinstance(raw, (dict, list, tuple)):
        raise ValidationError(f"'{question_type}' answers must be a single value")
    return ScalarAnswer(str(raw))


@dataclass
class Answer:
    """A student's answer to one question."""
    question_id: str
    value: AnswerValue
    time_spent: int = 0
    answered_at: Optional[datetime] = None

    def is_empty(self) -> bool:
        return self.value.is_empty()

    def to_dict(self) -> dict:
        if isinstance(self.value, CompositeAnswer):
            value = {"kind": "composite", "parts": self.value.to_raw()}
        else:
            value = {"kind": "scalar", "text": self.value.text}
        return {
            "question_id": self.question_id,
            "value": value,
            "time_spent": self.time_spent,
            "answered_at": _iso(self.answered_at),
        }

    @staticmethod
    def from_dict(data: dict) -> 'Answer':
        """Create an Answer from its stored form."""
        value_data = data["value"]
        if value_data.get("kind") == "composite":
            value = CompositeAnswer(dict(value_data.get("parts") or {}))
        else:
            value = ScalarAnswer(value_data.get("text") or "")
        return Answer(
            question_id=data["question_id"],
            value=value,
            time_spent=data.get("time_spent", 0),
            answered_at=_parse_dt(data.get("answered_at")),
        )


# ===== CONTENT =====

@dataclass
class SubItem:
    """One independently graded blank of a composite question."""
    label: str
    correct_answer: Optional[str] = None
    options: List[str] = field(default_factory=list)
    text: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> 'SubItem':
        return SubItem(
            label=str(data["label"]),
            correct_answer=data.get("correct_answer"),
            options=list(data.get("options") or []),
            text=data.get("text"),
        )


@dataclass
class Question:
    """Read-only question definition supplied by the content collaborator."""
    question_id: str
    question_type: str
    section_id: Optional[str] = None
    number: int = 0
    correct_answer: Optional[str] = None
    alternative_answers: List[str] = field(default_factory=list)
    options: List[str] = field(default_factory=list)
    items: List[SubItem] = field(default_factory=list)
    max_score: float = 1.0

    @property
    def is_composite(self) -> bool:
        return is_composite_type(self.question_type)

    def accepted_answers(self) -> List[str]:
        """The canonical correct answer followed by listed alternatives."""
        accepted = []
        if self.correct_answer:
            accepted.append(self.correct_answer)
        accepted.extend(alt for alt in self.alternative_answers if alt)
        return accepted

    @staticmethod
    def from_dict(data: dict, section_id: Optional[str] = None) -> 'Question':
        """Create a Question object from a dictionary."""
        return Question(
            question_id=str(data["id"]),
            question_type=data["type"],
            section_id=section_id or data.get("section_id"),
            number=data.get("number", 0),
            correct_answer=data.get("correct_answer"),
            alternative_answers=list(data.get("alternative_answers") or []),
            options=list(data.get("options") or []),
            items=[SubItem.from_dict(i) for i in data.get("items") or []],
            max_score=float(data.get("max_score", 1.0)),
        )


@dataclass
class Section:
    section_id: str
    number: int
    title: str = ""


@dataclass
class Test:
    """A timed test in a single module."""
    __test__ = False  # keep pytest from collecting this class

    test_id: str
    title: str
    module: str
    duration_minutes: int
    sections: List[Section] = field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)

    @staticmethod
    def from_dict(data: dict) -> 'Test':
        """Create a Test object from a dictionary (section questions are ignored)."""
        return Test(
            test_id=str(data["id"]),
            title=data.get("title", ""),
            module=data["module"],
            duration_minutes=data["duration_minutes"],
            sections=[
                Section(
                    section_id=str(s["id"]),
                    number=s.get("number", index + 1),
                    title=s.get("title", ""),
                )
                for index, s in enumerate(data.get("sections") or [])
            ],
        )


# ===== SESSIONS =====

@dataclass
class Session:
    """One student's attempt at one test."""
    session_id: str
    test_id: str
    user_id: str
    status: str
    started_at: datetime
    deadline_at: datetime
    answers: List[Answer] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    # Position to restore on resume
    current_section_number: int = 1
    current_question_index: int = 0
    tab_switch_count: int = 0
    flagged_for_review: bool = False
    # Listening sections whose recording was already played
    audio_played_sections: List[str] = field(default_factory=list)
    last_activity_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def remaining(self, now: datetime) -> timedelta:
        """Time left before the deadline, never negative."""
        return max(self.deadline_at - now, timedelta(0))

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "test_id": self.test_id,
            "user_id": self.user_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "deadline_at": _iso(self.deadline_at),
            "completed_at": _iso(self.completed_at),
            "current_section_number": self.current_section_number,
            "current_question_index": self.current_question_index,
            "tab_switch_count": self.tab_switch_count,
            "flagged_for_review": self.flagged_for_review,
            "audio_played_sections": list(self.audio_played_sections),
            "last_activity_at": _iso(self.last_activity_at),
            "answers": [a.to_dict() for a in self.answers],
        }

    @staticmethod
    def from_dict(data: dict) -> 'Session':
        return Session(
            session_id=data["session_id"],
            test_id=data["test_id"],
            user_id=data["user_id"],
            status=data["status"],
            started_at=_parse_dt(data["started_at"]),
            deadline_at=_parse_dt(data["deadline_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            current_section_number=data.get("current_section_number", 1),
            current_question_index=data.get("current_question_index", 0),
            tab_switch_count=data.get("tab_switch_count", 0),
            flagged_for_review=data.get("flagged_for_review", False),
            audio_played_sections=list(data.get("audio_played_sections") or []),
            last_activity_at=_parse_dt(data.get("last_activity_at")),
            answers=[Answer.from_dict(a) for a in data.get("answers") or []],
        )


# ===== RESULTS =====

@dataclass
class ItemGrade:
    """Outcome of grading one question."""
    question_id: str
    question_type: str
    status: str
    earned: float
    possible: float
    answered: bool = False
    sub_items: Dict[str, bool] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_correct(self) -> bool:
        return self.status == CORRECT

    @property
    def fraction(self) -> float:
        return self.earned / self.possible if self.possible else 0.0


@dataclass
class QuestionTypeStat:
    question_type: str
    total: int
    correct: int
    percentage: int


@dataclass
class SectionPerformance:
    section_number: int
    section_title: str
    questions_attempted: int
    correct_answers: int
    percentage: int


@dataclass
class Result:
    """
    Score record for a submitted session.

    Auto-graded modules get every field at submission time. Manually graded
    modules start with band_score None and are completed by a reviewer.
    """
    session_id: str
    test_id: str
    user_id: str
    module: str
    total_questions: int
    result_id: Optional[str] = None
    correct_answers: Optional[int] = None
    incorrect_answers: Optional[int] = None
    unanswered: Optional[int] = None
    percentage: Optional[int] = None
    band_score: Optional[float] = None
    is_manually_graded: bool = False
    writing_scores: Optional[Dict[str, float]] = None
    speaking_scores: Optional[Dict[str, float]] = None
    grading_notes: Optional[str] = None
    graded_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    question_type_breakdown: List[QuestionTypeStat] = field(default_factory=list)
    section_performance: List[SectionPerformance] = field(default_factory=list)
    weak_areas: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    items: List[ItemGrade] = field(default_factory=list)
    grading_errors: List[str] = field(default_factory=list)
    time_taken: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_pending_review(self) -> bool:
        return self.is_manually_graded and self.band_score is None

    def to_dict(self) -> dict:
        data = {
            key: getattr(self, key)
            for key in (
                "result_id", "session_id", "test_id", "user_id", "module",
                "total_questions", "correct_answers", "incorrect_answers",
                "unanswered", "percentage", "band_score", "is_manually_graded",
                "writing_scores", "speaking_scores", "grading_notes",
                "graded_by", "weak_areas", "recommendations",
                "grading_errors", "time_taken",
            )
        }
        data["reviewed_at"] = _iso(self.reviewed_at)
        data["created_at"] = _iso(self.created_at)
        data["question_type_breakdown"] = [vars(s).copy() for s in self.question_type_breakdown]
        data["section_performance"] = [vars(s).copy() for s in self.section_performance]
        data["items"] = [
            {**vars(item), "sub_items": dict(item.sub_items)} for item in self.items
        ]
        return data

    @staticmethod
    def from_dict(data: dict) -> 'Result':
        fields = dict(data)
        fields["reviewed_at"] = _parse_dt(data.get("reviewed_at"))
        fields["created_at"] = _parse_dt(data.get("created_at"))
        fields["question_type_breakdown"] = [
            QuestionTypeStat(**s) for s in data.get("question_type_breakdown") or []
        ]
        fields["section_performance"] = [
            SectionPerformance(**s) for s in data.get("section_performance") or []
        ]
        fields["items"] = [ItemGrade(**i) for i in data.get("items") or []]
        return Result(**fields)


# ===== CONFIGURATION =====

@dataclass
class EngineConfig:
    """
    Engine policy settings.

    Attributes:
        autosave_interval_seconds: Period of the background answer flush
        clock_tick_seconds: Period of the countdown check
        persist_retry_attempts: Attempts for remote calls during submission
        persist_retry_delay_seconds: First retry delay, doubled per attempt
        weak_area_threshold: Question types scoring below this percentage
            are reported as weak areas
        manual_modules: Modules graded by a reviewer instead of automatically
        band_table: Rows of [min_percentage, band]
        default_band: Band below the lowest table row
        tab_switch_flag_threshold: Tab switches after which a session is
            flagged for review
        event_log_dir: Directory for per-session event logs (None disables)
    """
    autosave_interval_seconds: float
    clock_tick_seconds: float
    persist_retry_attempts: int
    persist_retry_delay_seconds: float
    weak_area_threshold: float
    manual_modules: List[str]
    band_table: List[List[float]]
    default_band: float
    tab_switch_flag_threshold: int = 5
    event_log_dir: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> 'EngineConfig':
        """Create EngineConfig from dictionary."""
        return EngineConfig(
            autosave_interval_seconds=float(data.get('autosave_interval_seconds', 30)),
            clock_tick_seconds=float(data.get('clock_tick_seconds', 1)),
            persist_retry_attempts=int(data.get('persist_retry_attempts', 3)),
            persist_retry_delay_seconds=float(data.get('persist_retry_delay_seconds', 0.5)),
            weak_area_threshold=float(data.get('weak_area_threshold', 50)),
            manual_modules=list(data.get('manual_modules', ['writing', 'speaking'])),
            band_table=[list(row) for row in data.get('band_table', DEFAULT_BAND_TABLE)],
            default_band=float(data.get('default_band', DEFAULT_BAND)),
            tab_switch_flag_threshold=int(data.get('tab_switch_flag_threshold', 5)),
            event_log_dir=data.get('event_log_dir'),
        )

    def validate(self) -> tuple[bool, str]:
        """
        Validate configuration consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.autosave_interval_seconds <= 0:
            return False, "Autosave interval must be positive"

        if self.clock_tick_seconds <= 0:
            return False, "Clock tick must be positive"

        if self.persist_retry_attempts < 1:
            return False, "At least one persist attempt is required"

        if self.persist_retry_delay_seconds < 0:
            return False, "Retry delay must be non-negative"

        if not 0 <= self.weak_area_threshold <= 100:
            return False, "Weak area threshold must be between 0 and 100"

        unknown = [m for m in self.manual_modules if m not in MODULES]
        if unknown:
            return False, f"Unknown manual modules: {', '.join(unknown)}"

        table_error = validate_band_table(self.band_table)
        if table_error:
            return False, table_error

        if not 0 <= self.default_band <= 9:
            return False, "Default band must be between 0 and 9"

        if self.tab_switch_flag_threshold < 1:
            return False, "Tab switch flag threshold must be at least 1"

        return True, ""

    def is_manual_module(self, module: str) -> bool:
        return module in self.manual_modules

    @staticmethod
    def default() -> 'EngineConfig':
        """Return default configuration."""
        return EngineConfig.from_dict({})
