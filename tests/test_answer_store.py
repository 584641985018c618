"""
Tests for the in-memory answer working set and answer values.
"""

import pytest
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.answer_store import AnswerStore
from examengine.errors import ValidationError
from examengine.models import Answer, ScalarAnswer, CompositeAnswer, build_answer_value


class TestAnswerStore:
    """Test upserts, snapshots and dirty tracking."""

    def test_last_write_wins(self):
        """Test that a second answer to a question replaces the first."""
        store = AnswerStore()
        store.upsert(Answer("q1", ScalarAnswer("first")))
        store.upsert(Answer("q1", ScalarAnswer("second")))

        assert len(store) == 1
        assert store.get("q1").value.text == "second"

    def test_initial_answers_are_clean(self):
        """Test that answers loaded from the store do not need a flush."""
        store = AnswerStore([Answer("q1", ScalarAnswer("a"))])

        assert "q1" in store
        assert not store.is_dirty

    def test_dirty_until_flushed_version(self):
        """Test that only the flushed version clears the dirty flag."""
        store = AnswerStore()
        store.upsert(Answer("q1", ScalarAnswer("a")))
        version, answers = store.snapshot()
        store.upsert(Answer("q2", ScalarAnswer("b")))

        store.mark_flushed(version)

        assert len(answers) == 1
        assert store.is_dirty

        version, _ = store.snapshot()
        store.mark_flushed(version)
        assert not store.is_dirty

    def test_older_flush_does_not_rewind(self):
        """Test that a late confirmation of an older version is ignored."""
        store = AnswerStore()
        old = store.upsert(Answer("q1", ScalarAnswer("a")))
        new = store.upsert(Answer("q1", ScalarAnswer("b")))

        store.mark_flushed(new)
        store.mark_flushed(old)

        assert not store.is_dirty

    def test_answered_count_skips_empty(self):
        """Test that blank answers are not counted as answered."""
        store = AnswerStore()
        store.upsert(Answer("q1", ScalarAnswer("river")))
        store.upsert(Answer("q2", ScalarAnswer("  ")))
        store.upsert(Answer("q3", CompositeAnswer({"A": ""})))
        store.upsert(Answer("q4", CompositeAnswer({"A": "", "B": "dog"})))

        assert store.answered_count() == 2


class TestAnswerValues:
    """Test the scalar/composite answer variants."""

    def test_scalar_type_wraps_text(self):
        """Test that scalar types produce ScalarAnswer."""
        value = build_answer_value("short-answer", 12)
        assert value == ScalarAnswer("12")

    def test_composite_type_wraps_mapping(self):
        """Test that composite types produce CompositeAnswer and drop None parts."""
        value = build_answer_value("table-completion", {"A": "cat", "B": None})
        assert value == CompositeAnswer({"A": "cat"})

    def test_none_is_empty_variant(self):
        """Test that a cleared answer is an empty value of the declared variant."""
        assert build_answer_value("short-answer", None).is_empty()
        assert isinstance(build_answer_value("map-labeling", None), CompositeAnswer)

    def test_multi_select_list_joined(self):
        """Test that a list of choices is accepted for multi-select."""
        assert build_answer_value("multiple-choice-multi", ["B", "D"]) == ScalarAnswer("B, D")

    def test_shape_mismatch_rejected(self):
        """Test that values of the wrong shape raise ValidationError."""
        with pytest.raises(ValidationError):
            build_answer_value("short-answer", {"A": "x"})
        with pytest.raises(ValidationError):
            build_answer_value("table-completion", "cat")
        with pytest.raises(ValidationError):
            build_answer_value("table-completion", {"A": ["cat"]})

    def test_answer_dict_keeps_variant(self):
        """Test that stored answers come back as the same variant."""
        answer = Answer("q1", CompositeAnswer({"A": "cat"}), time_spent=12)

        restored = Answer.from_dict(answer.to_dict())

        assert restored == answer
