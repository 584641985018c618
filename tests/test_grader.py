"""
Tests for grader module.

Tests the automatic grading path including:
- Answer normalization
- Scalar and composite question types
- Partial credit and percentage/band aggregation
- Isolation of malformed question data
- Type breakdown, weak areas and recommendations
"""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.errors import GradingDataError
from examengine.grader import Grader, normalize_answer, REVIEW_PENDING_MESSAGE
from examengine.models import (
    Answer, Question, SubItem, Session, Section, Test, ScalarAnswer, CompositeAnswer,
    CORRECT, PARTIAL, INCORRECT, UNANSWERED, UNGRADED, COMPLETED,
)

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_session(answers, test_id="t1"):
    return Session(
        session_id="s1",
        test_id=test_id,
        user_id="u1",
        status=COMPLETED,
        started_at=START,
        deadline_at=START + timedelta(minutes=60),
        completed_at=START + timedelta(minutes=40),
        answers=answers,
    )


def scalar(question_id, text):
    return Answer(question_id, ScalarAnswer(text))


def reading_test(module="reading"):
    return Test("t1", "Reading Practice", module, 60, [
        Section("sec1", 1, "Passage 1"),
        Section("sec2", 2, "Passage 2"),
    ])


class TestNormalization:
    """Test answer normalization."""

    def test_article_and_whitespace(self):
        """Test that a leading article, case and padding are ignored."""
        assert normalize_answer(" The Dog ") == normalize_answer("dog")

    def test_html_and_punctuation_stripped(self):
        """Test that HTML tags and sentence punctuation are removed."""
        assert normalize_answer("<b>Paris</b>.") == "paris"
        assert normalize_answer("yes, sir!") == "yes sir"

    def test_inner_whitespace_collapsed(self):
        """Test that runs of whitespace become a single space."""
        assert normalize_answer("north \t  wing") == "north wing"

    def test_only_one_article_removed(self):
        """Test that only the first leading article is dropped."""
        assert normalize_answer("the a team") == "a team"

    def test_article_inside_word_kept(self):
        """Test that words starting with article letters are untouched."""
        assert normalize_answer("Another") == "another"
        assert normalize_answer("theatre") == "theatre"

    def test_none_is_empty(self):
        """Test that a missing answer normalizes to an empty string."""
        assert normalize_answer(None) == ""


class TestScalarGrading:
    """Test grading of single-answer questions."""

    def setup_method(self):
        self.grader = Grader()

    def test_multiple_choice_with_article(self):
        """Test the 'the paris' scenario is graded correct."""
        question = Question("q1", "multiple-choice", correct_answer="Paris")

        grade = self.grader.grade_item(question, ScalarAnswer("  the paris "))

        assert grade.status == CORRECT
        assert grade.earned == 1.0

    def test_alternative_answer_accepted(self):
        """Test that listed alternatives count as correct."""
        question = Question(
            "q1", "sentence-completion",
            correct_answer="colour", alternative_answers=["color"]
        )

        assert self.grader.grade_item(question, ScalarAnswer("Color")).is_correct

    def test_wrong_answer(self):
        """Test that a different answer is incorrect."""
        question = Question("q1", "true-false-not-given", correct_answer="TRUE")

        grade = self.grader.grade_item(question, ScalarAnswer("NOT GIVEN"))

        assert grade.status == INCORRECT
        assert grade.answered is True
        assert grade.earned == 0.0

    def test_empty_answer_is_unanswered(self):
        """Test that blank or missing answers are unanswered, not incorrect."""
        question = Question("q1", "short-answer", correct_answer="library")

        assert self.grader.grade_item(question, ScalarAnswer("   ")).status == UNANSWERED
        assert self.grader.grade_item(question, None).status == UNANSWERED

    def test_max_score_weights_credit(self):
        """Test that a correct answer earns the question's max score."""
        question = Question("q1", "short-answer", correct_answer="river", max_score=2.0)

        grade = self.grader.grade_item(question, ScalarAnswer("River"))

        assert grade.earned == 2.0
        assert grade.possible == 2.0

    def test_summary_completion_letter_answer(self):
        """Test that a letter answer resolves to the option text."""
        question = Question(
            "q1", "summary-completion",
            correct_answer="energy",
            options=["water", "energy", "soil"],
        )

        assert self.grader.grade_item(question, ScalarAnswer("B")).is_correct
        assert not self.grader.grade_item(question, ScalarAnswer("A")).is_correct

    def test_summary_completion_letter_key(self):
        """Test that typed text matches a correct answer given as a letter."""
        question = Question(
            "q1", "summary-completion",
            correct_answer="C",
            options=["water", "energy", "soil"],
        )

        assert self.grader.grade_item(question, ScalarAnswer("soil")).is_correct
        assert self.grader.grade_item(question, ScalarAnswer("c")).is_correct

    def test_multiple_choice_multi_any_order(self):
        """Test that multi-select answers ignore selection order."""
        question = Question("q1", "multiple-choice-multi", correct_answer="B, D")

        assert self.grader.grade_item(question, ScalarAnswer("D,B")).is_correct
        assert not self.grader.grade_item(question, ScalarAnswer("B")).is_correct


class TestCompositeGrading:
    """Test grading of questions with independently graded sub-items."""

    def setup_method(self):
        self.grader = Grader()

    def test_table_completion_partial(self):
        """Test that one of two blanks right earns half credit."""
        question = Question("q1", "table-completion", items=[
            SubItem("A", "cat"), SubItem("B", "dog"),
        ])

        grade = self.grader.grade_item(question, CompositeAnswer({"A": "cat", "B": "fox"}))

        assert grade.status == PARTIAL
        assert grade.earned == 0.5
        assert grade.sub_items == {"A": True, "B": False}
        assert not grade.is_correct

    def test_all_sub_items_correct(self):
        """Test that every blank right makes the item correct."""
        question = Question("q1", "map-labeling", items=[
            SubItem("1", "Reception"), SubItem("2", "Cafe"),
        ])

        grade = self.grader.grade_item(question, CompositeAnswer({"1": "reception", "2": "the cafe"}))

        assert grade.status == CORRECT
        assert grade.earned == 1.0

    def test_no_sub_answers_is_unanswered(self):
        """Test that an empty composite answer is unanswered."""
        question = Question("q1", "table-completion", items=[SubItem("A", "cat")])

        assert self.grader.grade_item(question, CompositeAnswer({})).status == UNANSWERED

    def test_matching_information_paragraph_prefix(self):
        """Test that 'Paragraph C' is read as the letter C."""
        question = Question("q1", "matching-information", items=[
            SubItem("14", "C"), SubItem("15", "A"),
        ])

        grade = self.grader.grade_item(
            question, CompositeAnswer({"14": "Paragraph C", "15": "paragraph a"})
        )

        assert grade.status == CORRECT

    def test_matching_headings_full_text_key(self):
        """Test that a heading key given as full text resolves to its numeral."""
        question = Question(
            "q1", "matching-headings",
            options=[
                "The history of coastal erosion",
                "Economic effects of tourism on islands",
                "Why governments ignore the problem",
            ],
            items=[SubItem("Paragraph A", "Economic effects of tourism on islands")],
        )

        assert self.grader.grade_item(question, CompositeAnswer({"Paragraph A": "ii"})).is_correct
        assert self.grader.grade_item(question, CompositeAnswer({"Paragraph A": "b"})).is_correct
        assert not self.grader.grade_item(question, CompositeAnswer({"Paragraph A": "i"})).is_correct


class TestMalformedData:
    """Test that bad question data is reported per item."""

    def setup_method(self):
        self.grader = Grader()

    def test_missing_correct_answer_raises(self):
        """Test that a question without an answer key raises GradingDataError."""
        with pytest.raises(GradingDataError) as exc_info:
            self.grader.grade_item(Question("q9", "short-answer"), ScalarAnswer("x"))
        assert exc_info.value.question_id == "q9"

    def test_shape_mismatch_raises(self):
        """Test that a composite answer to a scalar question raises."""
        question = Question("q1", "short-answer", correct_answer="x")
        with pytest.raises(GradingDataError):
            self.grader.grade_item(question, CompositeAnswer({"A": "x"}))

    def test_sub_item_without_key_raises(self):
        """Test that composite items need a key for every blank."""
        question = Question("q1", "table-completion", items=[SubItem("A", None)])
        with pytest.raises(GradingDataError):
            self.grader.grade_item(question, CompositeAnswer({"A": "cat"}))

    def test_unknown_type_raises(self):
        """Test that free-response types are not auto-graded."""
        question = Question("q1", "writing-task", correct_answer="x")
        with pytest.raises(GradingDataError):
            self.grader.grade_item(question, ScalarAnswer("essay"))

    def test_bad_item_does_not_abort_session(self):
        """Test that one broken question is downgraded and the rest graded."""
        questions = [
            Question("q1", "short-answer", section_id="sec1", number=1, correct_answer="river"),
            Question("q2", "short-answer", section_id="sec1", number=2),
        ]
        session = make_session([scalar("q1", "river"), scalar("q2", "lake")])

        result = Grader().grade(session, reading_test(), questions)

        assert result.correct_answers == 1
        assert result.incorrect_answers == 1
        assert result.items[1].status == UNGRADED
        assert len(result.grading_errors) == 1
        assert result.grading_errors[0].startswith("q2")


class TestSessionGrading:
    """Test aggregation of item grades into a Result."""

    def setup_method(self):
        self.grader = Grader()
        self.questions = [
            Question("q1", "multiple-choice", section_id="sec1", number=1, correct_answer="Paris"),
            Question("q2", "short-answer", section_id="sec1", number=2, correct_answer="river"),
            Question("q3", "table-completion", section_id="sec2", number=3, items=[
                SubItem("A", "cat"), SubItem("B", "dog"),
            ]),
            Question("q4", "short-answer", section_id="sec2", number=4, correct_answer="bridge"),
        ]

    def test_partial_credit_in_percentage_not_count(self):
        """Test that partial items add to percentage but not correct_answers."""
        session = make_session([
            scalar("q1", "the paris"),
            scalar("q2", "river"),
            Answer("q3", CompositeAnswer({"A": "cat", "B": "fox"})),
        ])

        result = self.grader.grade(session, reading_test(), self.questions)

        assert result.total_questions == 4
        assert result.correct_answers == 2
        assert result.incorrect_answers == 2
        assert result.unanswered == 1
        # (1 + 1 + 0.5 + 0) / 4
        assert result.percentage == 62
        assert result.band_score == 7.0
        assert result.is_manually_graded is False
        assert result.time_taken == 40 * 60

    def test_perfect_score(self):
        """Test that every answer right gives band 9."""
        session = make_session([
            scalar("q1", "Paris"),
            scalar("q2", "river"),
            Answer("q3", CompositeAnswer({"A": "cat", "B": "dog"})),
            scalar("q4", "bridge"),
        ])

        result = self.grader.grade(session, reading_test(), self.questions)

        assert result.percentage == 100
        assert result.band_score == 9.0
        assert result.weak_areas == []

    def test_empty_session(self):
        """Test that nothing answered gives the default band."""
        result = self.grader.grade(make_session([]), reading_test(), self.questions)

        assert result.correct_answers == 0
        assert result.unanswered == 4
        assert result.percentage == 0
        assert result.band_score == 2.5

    def test_section_performance_counts_attempted(self):
        """Test per-section accuracy over attempted questions only."""
        session = make_session([scalar("q1", "Paris"), scalar("q4", "tunnel")])

        result = self.grader.grade(session, reading_test(), self.questions)

        first, second = result.section_performance
        assert (first.section_number, first.questions_attempted, first.correct_answers) == (1, 1, 1)
        assert first.percentage == 100
        assert (second.questions_attempted, second.correct_answers, second.percentage) == (1, 0, 0)

    def test_type_breakdown_and_weak_areas(self):
        """Test grouping by question type and the weak area threshold."""
        session = make_session([
            scalar("q1", "Paris"),
            scalar("q2", "lake"),
            scalar("q4", "bridge"),
        ])

        result = self.grader.grade(session, reading_test(), self.questions)

        stats = {s.question_type: s for s in result.question_type_breakdown}
        assert stats["multiple-choice"].percentage == 100
        assert (stats["short-answer"].total, stats["short-answer"].correct) == (2, 1)
        assert stats["short-answer"].percentage == 50
        assert result.weak_areas == ["table-completion"]
        assert any("table completion" in r for r in result.recommendations)
        assert any("1 question(s) unanswered" in r for r in result.recommendations)

    def test_orphan_answer_recorded(self):
        """Test that answers to unknown questions are reported, not graded."""
        session = make_session([scalar("q1", "Paris"), scalar("zz", "?")])

        result = self.grader.grade(session, reading_test(), self.questions)

        assert result.total_questions == 4
        assert any(e.startswith("zz") for e in result.grading_errors)

    def test_custom_band_converter(self):
        """Test that the band table is injectable."""
        grader = Grader(band_converter=lambda pct: 5.0)
        session = make_session([scalar("q1", "Paris")])

        assert grader.grade(session, reading_test(), self.questions).band_score == 5.0


class TestManualModules:
    """Test result shells for reviewer-graded modules."""

    def test_writing_creates_pending_result(self):
        """Test that writing results wait for a reviewer."""
        questions = [Question("w1", "writing-task", section_id="sec1", number=1)]
        session = make_session([scalar("w1", "My essay about cities...")])

        result = Grader().grade(session, reading_test("writing"), questions)

        assert result.is_manually_graded is True
        assert result.band_score is None
        assert result.percentage is None
        assert result.correct_answers is None
        assert result.is_pending_review
        assert result.recommendations == [REVIEW_PENDING_MESSAGE]
