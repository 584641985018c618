"""
Reviewer grading for manually graded results.

The RubricAggregator never scores anything on its own: it validates a
reviewer's judgment (per-criterion rubric scores or a direct band), turns
rubric scores into an overall band and stores the outcome.
"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from .bands import band_to_percentage, is_valid_band, round_to_nearest_half
from .clock import Clock, SystemClock
from .errors import StateError, ValidationError
from .models import Result
from .store import SessionStore

logger = logging.getLogger(__name__)

WRITING_CRITERIA = (
    "task_achievement",
    "coherence_cohesion",
    "lexical_resource",
    "grammatical_range",
)

SPEAKING_CRITERIA = (
    "fluency_coherence",
    "lexical_resource",
    "grammatical_range",
    "pronunciation",
)

RUBRICS = {
    "writing": WRITING_CRITERIA,
    "speaking": SPEAKING_CRITERIA,
}


def validate_band(value, name: str = "Band score") -> float:
    """
    Check a band value: 0-9 in 0.5 steps.

    Raises:
        ValidationError: If the value is not a number or out of range
    """
    try:
        band = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if band < 0:
        raise ValidationError(f"{name} must not be negative")
    if not is_valid_band(band):
        raise ValidationError(f"{name} must be between 0 and 9 in 0.5 steps, got {band}")
    return band


def aggregate_rubric(module: str, scores: Dict[str, float]) -> float:
    """
    Overall band for a module rubric: mean of the criteria rounded to the
    nearest half band.

    Args:
        module: "writing" or "speaking"
        scores: Criterion name -> score

    Returns:
        Overall band score
    """
    criteria = RUBRICS.get(module)
    if criteria is None:
        raise ValidationError(f"No rubric is defined for the '{module}' module")

    missing = [c for c in criteria if c not in scores]
    if missing:
        raise ValidationError(f"Missing rubric criteria: {', '.join(missing)}")
    unknown = [c for c in scores if c not in criteria]
    if unknown:
        raise ValidationError(f"Unknown rubric criteria for {module}: {', '.join(unknown)}")

    values = [validate_band(scores[c], c) for c in criteria]
    return round_to_nearest_half(sum(values) / len(values))


class ReviewQueue:
    """Results waiting for a reviewer, in arrival order."""

    def __init__(self):
        self._pending: "OrderedDict[str, Result]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_store(cls, store: SessionStore) -> 'ReviewQueue':
        """Queue rebuilt from the results a store still has waiting for a reviewer."""
        queue = cls()
        queue.sync(store.list_results())
        return queue

    def sync(self, results: Iterable[Result]):
        """Add results pending review and drop the ones already graded."""
        with self._lock:
            for result in results:
                if result.is_pending_review:
                    self._pending.setdefault(result.result_id, result)
                else:
                    self._pending.pop(result.result_id, None)

    def add(self, result: Result):
        with self._lock:
            self._pending[result.result_id] = result

    def remove(self, result_id: str) -> bool:
        with self._lock:
            return self._pending.pop(result_id, None) is not None

    def list(self, module: Optional[str] = None) -> List[Result]:
        with self._lock:
            return [
                r for r in self._pending.values()
                if module is None or r.module == module
            ]

    def __contains__(self, result_id: str) -> bool:
        with self._lock:
            return result_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class RubricAggregator:
    """Stores reviewer grades on results."""

    def __init__(
        self,
        store: SessionStore,
        review_queue: Optional[ReviewQueue] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.review_queue = review_queue if review_queue is not None else ReviewQueue.from_store(store)
        self.clock = clock or SystemClock()

    def submit_grade(
        self,
        result_id: str,
        band_score: Optional[float] = None,
        grading_notes: str = "",
        rubric: Optional[Dict[str, float]] = None,
        graded_by: Optional[str] = None,
        confirm_regrade: bool = False
    ) -> Result:
        """
        Record a reviewer's grade.

        With a rubric the overall band is computed from the criteria and
        band_score is ignored; without one band_score is stored directly.
        Grading a result that already carries a reviewer grade overwrites
        it and must be confirmed with confirm_regrade.

        Args:
            result_id: Result to grade
            band_score: Direct band (0-9, 0.5 steps)
            grading_notes: Reviewer feedback, required
            rubric: Criterion scores for writing/speaking
            graded_by: Reviewer id
            confirm_regrade: Caller confirmed overwriting a previous grade

        Returns:
            The updated Result

        Raises:
            ValidationError: Empty notes, invalid band or rubric
            NotFoundError: Unknown result
            StateError: Re-grade without confirmation
        """
        notes = (grading_notes or "").strip()
        if not notes:
            raise ValidationError("Grading notes are required")

        if rubric is None:
            if band_score is None:
                raise ValidationError("A band score or a rubric is required")
            band = validate_band(band_score)

        result = self.store.get_result(result_id)

        if result.reviewed_at is not None and not confirm_regrade:
            raise StateError(
                f"Result '{result_id}' was already graded; confirm the re-grade to overwrite it"
            )

        breakdown = None
        if rubric is not None:
            band = aggregate_rubric(result.module, rubric)
            breakdown = {c: float(rubric[c]) for c in RUBRICS[result.module]}

        payload = {
            "band_score": band,
            "grading_notes": notes,
            "graded_by": graded_by,
            "reviewed_at": self.clock.now(),
            "is_manually_graded": True,
        }
        if result.module in RUBRICS:
            payload[f"{result.module}_scores"] = breakdown
        # Reviewer-only results have no computed percentage of their own
        if result.correct_answers is None:
            payload["percentage"] = band_to_percentage(band)

        updated = self.store.grade_result(result_id, payload)
        self.review_queue.remove(result_id)

        logger.info(
            "Result %s graded: band %.1f by %s%s",
            result_id, band, graded_by or "unknown reviewer",
            " (re-grade)" if result.reviewed_at is not None else ""
        )
        return updated

    def pending_reviews(self, module: Optional[str] = None) -> List[Result]:
        """Results still waiting for a reviewer, optionally for one module."""
        self.review_queue.sync(self.store.list_results(module=module))
        return self.review_queue.list(module)
