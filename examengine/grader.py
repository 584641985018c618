"""
Grader module for scoring submitted exam sessions.

Provides the Grader class which compares answers against question
definitions using type-specific checkers, awards partial credit for
composite questions and aggregates everything into a Result.
"""

import logging
import re
from collections import OrderedDict
from typing import Dict, List, Optional, Callable, Any

from .bands import BandConverter, make_band_converter
from .errors import GradingDataError
from .models import (
    Session, Test, Question, SubItem, Result, ItemGrade, QuestionTypeStat,
    SectionPerformance, EngineConfig, ScalarAnswer, CompositeAnswer,
    AnswerValue, SCALAR_TYPES, CORRECT, PARTIAL, INCORRECT, UNANSWERED,
    UNGRADED,
)

logger = logging.getLogger(__name__)

_HTML_TAG = re.compile(r"<[^>]*>")
_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+")
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[.,;!?]")
_SINGLE_LETTER = re.compile(r"^[a-z]$", re.IGNORECASE)
_STANDALONE_LETTER = re.compile(r"\b([a-z])\b", re.IGNORECASE)

# Matching types whose answers are paragraph/feature letters
LETTER_MATCHING_TYPES = ("matching-information", "matching-features")

ROMAN_NUMERALS = ("i", "ii", "iii", "iv", "v", "vi", "vii", "viii", "ix", "x")

REVIEW_PENDING_MESSAGE = (
    "Your test is being reviewed by your teacher. Results will be available soon."
)


def normalize_answer(answer: Any) -> str:
    """
    Canonical form used for every answer comparison.

    Strips HTML tags, lowercases, trims, drops one leading article
    (the/a/an), collapses whitespace and removes . , ; ! ?
    """
    if answer is None:
        return ""
    text = _HTML_TAG.sub("", str(answer)).lower().strip()
    text = _LEADING_ARTICLE.sub("", text, count=1)
    text = _WHITESPACE.sub(" ", text)
    text = _PUNCTUATION.sub("", text)
    return text.strip()


def _option_index(label: str) -> Optional[int]:
    """Index of a single-letter option label (A -> 0), else None."""
    label = label.strip()
    if _SINGLE_LETTER.match(label):
        return ord(label.upper()) - ord("A")
    return None


def _heading_label(index: int) -> str:
    if index < len(ROMAN_NUMERALS):
        return ROMAN_NUMERALS[index]
    return chr(ord("a") + index)


class Grader:
    """Scores sessions against question definitions."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        band_converter: Optional[BandConverter] = None
    ):
        """
        Initialize grader with available checker functions.

        Args:
            config: Engine policy (weak-area threshold, manual modules, band table)
            band_converter: Percentage -> band function. Defaults to one built
                from the configured band table.
        """
        self.config = config or EngineConfig.default()
        self.band_converter = band_converter or make_band_converter(
            self.config.band_table, self.config.default_band
        )
        self.checkers: Dict[str, Callable[[str, Question], bool]] = {
            "summary-completion": self._summary_match,
            "multiple-choice-multi": self._unordered_choice_match,
        }

    # ===== CHECKER FUNCTIONS =====

    def _exact_match(self, submitted: str, question: Question) -> bool:
        """
        Default checker: normalized equality with any accepted answer.

        Args:
            submitted: Answer text from the student
            question: Question holding the correct answer and alternatives

        Returns:
            True if the normalized submission equals a normalized accepted answer
        """
        normalized = normalize_answer(submitted)
        if not normalized:
            return False
        return any(normalized == normalize_answer(a) for a in question.accepted_answers())

    def _summary_match(self, submitted: str, question: Question) -> bool:
        """
        Summary completion accepts either the option text or its letter.

        A letter answer is resolved to its option text before comparing, and
        a letter correct answer is resolved so typed text can match it.
        """
        if self._exact_match(submitted, question):
            return True
        if not question.options:
            return False

        accepted = {normalize_answer(a) for a in question.accepted_answers()}

        index = _option_index(submitted)
        if index is not None and index < len(question.options):
            if normalize_answer(question.options[index]) in accepted:
                return True

        correct_index = _option_index(question.correct_answer or "")
        if correct_index is not None and correct_index < len(question.options):
            resolved = normalize_answer(question.options[correct_index])
            if resolved and normalize_answer(submitted) == resolved:
                return True
        return False

    def _unordered_choice_match(self, submitted: str, question: Question) -> bool:
        """
        Checker for multi-select answers where order does not matter.

        Selections are comma separated; both sides are compared as sets of
        normalized choices.
        """
        chosen = {normalize_answer(part) for part in submitted.split(",")} - {""}
        if not chosen:
            return False
        for accepted in question.accepted_answers():
            expected = {normalize_answer(part) for part in accepted.split(",")} - {""}
            if chosen == expected:
                return True
        return False

    def _match_sub_item(self, question: Question, item: SubItem, submitted: str) -> bool:
        """Grade one sub-item of a composite question."""
        if question.question_type in LETTER_MATCHING_TYPES:
            # "Paragraph C" -> "C"
            match = _STANDALONE_LETTER.search(submitted)
            if match:
                submitted = match.group(1).upper()

        normalized = normalize_answer(submitted)
        if not normalized:
            return False
        expected = self._resolve_option_label(question, item, submitted)
        return normalized == normalize_answer(expected)

    def _resolve_option_label(self, question: Question, item: SubItem, submitted: str) -> str:
        """
        Map a correct answer written as full option text to the option label.

        Short correct answers ("iv", "B") are already labels. Long ones are
        looked up in the options by exact normalized match, then by mutual
        inclusion for long texts. Headings accept roman numerals or letters
        depending on how the student answered.
        """
        correct = item.correct_answer or ""
        options = question.options or item.options
        if len(correct) <= 4 or not options:
            return correct

        normalized_correct = normalize_answer(correct)
        normalized_options = [normalize_answer(opt) for opt in options]

        index = next(
            (i for i, opt in enumerate(normalized_options) if opt == normalized_correct),
            None
        )
        if index is None and len(normalized_correct) >= 15:
            index = next(
                (
                    i for i, opt in enumerate(normalized_options)
                    if len(opt) >= 15 and (opt in normalized_correct or normalized_correct in opt)
                ),
                None
            )
        if index is None:
            return correct

        if question.question_type == "matching-headings":
            if _SINGLE_LETTER.match(submitted.strip()):
                return chr(ord("a") + index)
            return _heading_label(index)
        return chr(ord("A") + index)

    # ===== ITEM GRADING =====

    def grade_item(self, question: Question, value: Optional[AnswerValue]) -> ItemGrade:
        """
        Grade a single question.

        Args:
            question: Question definition
            value: Submitted answer, or None when never answered

        Returns:
            ItemGrade with status correct/partial/incorrect/unanswered

        Raises:
            GradingDataError: If the question or the answer shape is malformed
        """
        if question.max_score <= 0:
            raise GradingDataError(question.question_id, "max score must be positive")

        if question.is_composite:
            return self._grade_composite(question, value)

        if question.question_type not in SCALAR_TYPES:
            raise GradingDataError(
                question.question_id,
                f"question type '{question.question_type}' cannot be auto-graded"
            )
        if value is not None and not isinstance(value, ScalarAnswer):
            raise GradingDataError(question.question_id, "expected a single answer")
        if not question.accepted_answers():
            raise GradingDataError(question.question_id, "no accepted answer defined")

        if value is None or value.is_empty():
            return ItemGrade(
                question.question_id, question.question_type, UNANSWERED,
                earned=0.0, possible=question.max_score
            )

        checker = self.checkers.get(question.question_type, self._exact_match)
        is_correct = checker(value.text, question)
        return ItemGrade(
            question.question_id,
            question.question_type,
            CORRECT if is_correct else INCORRECT,
            earned=question.max_score if is_correct else 0.0,
            possible=question.max_score,
            answered=True,
        )

    def _grade_composite(self, question: Question, value: Optional[AnswerValue]) -> ItemGrade:
        """Grade every sub-item independently and award the matched fraction."""
        if not question.items:
            raise GradingDataError(question.question_id, "composite question has no sub-items")
        if value is not None and not isinstance(value, CompositeAnswer):
            raise GradingDataError(question.question_id, "expected labelled sub-answers")
        missing = [item.label for item in question.items if not item.correct_answer]
        if missing:
            raise GradingDataError(
                question.question_id,
                f"sub-items without a correct answer: {', '.join(missing)}"
            )

        sub_items: Dict[str, bool] = {}
        for item in question.items:
            submitted = value.get(item.label) if value is not None else ""
            sub_items[item.label] = self._match_sub_item(question, item, submitted)

        matched = sum(sub_items.values())
        total = len(question.items)
        answered = value is not None and not value.is_empty()

        if matched == total:
            status = CORRECT
        elif matched > 0:
            status = PARTIAL
        elif answered:
            status = INCORRECT
        else:
            status = UNANSWERED

        return ItemGrade(
            question.question_id,
            question.question_type,
            status,
            earned=question.max_score * matched / total,
            possible=question.max_score,
            answered=answered,
            sub_items=sub_items,
        )

    # ===== SESSION GRADING =====

    def grade(self, session: Session, test: Test, questions: List[Question]) -> Result:
        """
        Score a submitted session.

        Args:
            session: Session with its final answers
            test: Test the session belongs to
            questions: All questions of the test, in order

        Returns:
            Result (without result_id; the store assigns it)
        """
        if self.config.is_manual_module(test.module):
            return self._manual_result(session, test, questions)
        return self._auto_result(session, test, questions)

    def _manual_result(self, session: Session, test: Test, questions: List[Question]) -> Result:
        """Result shell for reviewer-graded modules: no ground truth to compare."""
        logger.info(
            "Session %s requires manual grading (module: %s)", session.session_id, test.module
        )
        return Result(
            session_id=session.session_id,
            test_id=test.test_id,
            user_id=session.user_id,
            module=test.module,
            total_questions=len(questions),
            is_manually_graded=True,
            recommendations=[REVIEW_PENDING_MESSAGE],
            time_taken=self._time_taken(session),
        )

    def _auto_result(self, session: Session, test: Test, questions: List[Question]) -> Result:
        answers = {answer.question_id: answer for answer in session.answers}
        items: List[ItemGrade] = []
        errors: List[str] = []

        for question in questions:
            answer = answers.get(question.question_id)
            try:
                grade = self.grade_item(question, answer.value if answer else None)
            except GradingDataError as e:
                logger.warning(
                    "Session %s: item %s downgraded to incorrect: %s",
                    session.session_id, e.question_id, e.message
                )
                errors.append(str(e))
                grade = ItemGrade(
                    question.question_id,
                    question.question_type,
                    UNGRADED,
                    earned=0.0,
                    possible=question.max_score if question.max_score > 0 else 1.0,
                    answered=answer is not None and not answer.is_empty(),
                    error=e.message,
                )
            items.append(grade)

        known = {question.question_id for question in questions}
        for question_id in answers:
            if question_id not in known:
                logger.warning(
                    "Session %s: answer for unknown question %s ignored",
                    session.session_id, question_id
                )
                errors.append(f"{question_id}: answer references no question of this test")

        total_questions = len(items)
        correct = sum(1 for item in items if item.is_correct)
        unanswered = sum(1 for item in items if not item.answered)
        earned = sum(item.earned for item in items)
        possible = sum(item.possible for item in items)
        percentage = round(100 * earned / possible) if possible > 0 else 0
        band = self.band_converter(percentage)

        breakdown = self.type_breakdown(items)
        weak_areas = self.weak_areas(breakdown)

        return Result(
            session_id=session.session_id,
            test_id=test.test_id,
            user_id=session.user_id,
            module=test.module,
            total_questions=total_questions,
            correct_answers=correct,
            incorrect_answers=total_questions - correct,
            unanswered=unanswered,
            percentage=percentage,
            band_score=band,
            is_manually_graded=False,
            question_type_breakdown=breakdown,
            section_performance=self.section_performance(test, questions, items),
            weak_areas=weak_areas,
            recommendations=self.recommendations(weak_areas, unanswered, band),
            items=items,
            grading_errors=errors,
            time_taken=self._time_taken(session),
        )

    # ===== BREAKDOWNS =====

    def type_breakdown(self, items: List[ItemGrade]) -> List[QuestionTypeStat]:
        """Group items by question type, in order of first appearance."""
        groups: "OrderedDict[str, List[ItemGrade]]" = OrderedDict()
        for item in items:
            groups.setdefault(item.question_type, []).append(item)

        stats = []
        for question_type, group in groups.items():
            possible = sum(item.possible for item in group)
            earned = sum(item.earned for item in group)
            stats.append(QuestionTypeStat(
                question_type=question_type,
                total=len(group),
                correct=sum(1 for item in group if item.is_correct),
                percentage=round(100 * earned / possible) if possible > 0 else 0,
            ))
        return stats

    def weak_areas(self, breakdown: List[QuestionTypeStat]) -> List[str]:
        threshold = self.config.weak_area_threshold
        return [
            stat.question_type for stat in breakdown
            if stat.total > 0 and stat.percentage < threshold
        ]

    def recommendations(self, weak_areas: List[str], unanswered: int, band: float) -> List[str]:
        lines = [
            f"Practice more {area.replace('-', ' ')} questions to improve your score."
            for area in weak_areas
        ]
        if unanswered > 0:
            lines.append(
                f"You left {unanswered} question(s) unanswered. Try to manage your time better."
            )
        if band < 6:
            lines.append("Focus on building your fundamentals in this module.")
        return lines

    def section_performance(
        self,
        test: Test,
        questions: List[Question],
        items: List[ItemGrade]
    ) -> List[SectionPerformance]:
        """Per-section accuracy over the questions the student attempted."""
        by_question = {item.question_id: item for item in items}
        performance = []
        for section in sorted(test.sections, key=lambda s: s.number):
            attempted = [
                by_question[q.question_id] for q in questions
                if q.section_id == section.section_id
                and q.question_id in by_question
                and by_question[q.question_id].answered
            ]
            earned = sum(item.earned for item in attempted)
            possible = sum(item.possible for item in attempted)
            performance.append(SectionPerformance(
                section_number=section.number,
                section_title=section.title,
                questions_attempted=len(attempted),
                correct_answers=sum(1 for item in attempted if item.is_correct),
                percentage=round(100 * earned / possible) if possible > 0 else 0,
            ))
        return performance

    @staticmethod
    def _time_taken(session: Session) -> Optional[int]:
        if session.completed_at is None:
            return None
        return int((session.completed_at - session.started_at).total_seconds())
