"""
Exception types raised by the session and scoring engine.
"""


class ExamEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(ExamEngineError):
    """Caller supplied invalid input (empty feedback, out-of-range score...)."""


class StateError(ExamEngineError):
    """Action attempted while the session or result is in the wrong state."""


class NotFoundError(ExamEngineError):
    """Session, question, test or result does not exist."""


class TransientIOError(ExamEngineError):
    """A call to the remote store failed and may succeed if retried."""


class GradingDataError(ExamEngineError):
    """
    A question/answer pair cannot be graded.

    Raised per item while grading and never allowed to abort a whole
    submission: the item is downgraded to incorrect instead.
    """

    def __init__(self, question_id: str, message: str):
        super().__init__(f"{question_id}: {message}")
        self.question_id = question_id
        self.message = message
