"""
Tests for question banks.

Tests:
- Key file and password encryption round trips
- Schema validation
- Serving tests and questions from a bank
"""

import json
import pytest
from pathlib import Path

from cryptography.fernet import Fernet

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.content import (
    BankContent, encrypt_bank, decrypt_bank, load_bank_file, validate_bank, SALT_PREFIX,
)
from examengine.errors import NotFoundError

BANK = {
    "version": "2024.1",
    "tests": [
        {
            "id": "listening-1",
            "title": "Listening Practice",
            "module": "listening",
            "duration_minutes": 30,
            "sections": [
                {
                    "id": "l1-s2",
                    "number": 2,
                    "title": "Part 2",
                    "questions": [
                        {"id": "q12", "number": 12, "type": "short-answer", "correct_answer": "museum"},
                        {"id": "q11", "number": 11, "type": "form-completion", "correct_answer": "Smith"},
                    ],
                },
                {
                    "id": "l1-s1",
                    "number": 1,
                    "title": "Part 1",
                    "questions": [
                        {
                            "id": "q1", "number": 1, "type": "map-labeling", "max_score": 2,
                            "items": [
                                {"label": "1", "correct_answer": "Reception"},
                                {"label": "2", "correct_answer": "Cafe"},
                            ],
                        },
                    ],
                },
            ],
        },
    ],
}


class TestEncryption:
    """Test bank encryption and decryption."""

    def test_key_file_round_trip(self):
        """Test that a key-encrypted bank decrypts with the same key."""
        key = Fernet.generate_key()
        plaintext = json.dumps(BANK).encode()

        data = encrypt_bank(plaintext, key=key)

        assert not data.startswith(SALT_PREFIX)
        assert decrypt_bank(data, key=key) == plaintext

    def test_password_round_trip(self):
        """Test that a password-encrypted bank carries its salt."""
        plaintext = b'{"tests": []}'

        data = encrypt_bank(plaintext, password="exam-password")

        assert data.startswith(SALT_PREFIX)
        assert decrypt_bank(data, password="exam-password") == plaintext

    def test_wrong_password(self):
        """Test that a wrong password raises ValueError."""
        data = encrypt_bank(b"{}", password="exam-password")

        with pytest.raises(ValueError, match="Decryption failed"):
            decrypt_bank(data, password="other-password")

    def test_missing_credentials(self):
        """Test that the matching credential kind is required."""
        with pytest.raises(ValueError):
            encrypt_bank(b"{}")
        with pytest.raises(ValueError, match="password"):
            decrypt_bank(encrypt_bank(b"{}", password="exam-password"), key=Fernet.generate_key())

    def test_load_encrypted_file(self, tmp_path):
        """Test reading an encrypted bank from disk."""
        key = Fernet.generate_key()
        path = tmp_path / "bank.enc"
        path.write_bytes(encrypt_bank(json.dumps(BANK).encode(), key=key))

        content = BankContent.from_file(path, key=key)

        assert content.test_ids() == ["listening-1"]

    def test_load_plaintext_file(self, tmp_path):
        """Test that .json banks are read without decryption."""
        path = tmp_path / "bank.json"
        path.write_text(json.dumps(BANK), encoding="utf-8")

        assert load_bank_file(path)["version"] == "2024.1"


class TestValidation:
    """Test bank schema validation."""

    def test_valid_bank(self):
        """Test that a well-formed bank has no problems."""
        assert validate_bank(BANK) == []

    def test_empty_bank(self):
        """Test that a bank needs tests."""
        assert validate_bank({"tests": []})

    def test_bad_module_and_duration(self):
        """Test that module and duration are checked."""
        problems = validate_bank({"tests": [{"id": "t", "module": "maths", "duration_minutes": 0}]})

        assert any("unknown module" in p for p in problems)
        assert any("duration_minutes" in p for p in problems)

    def test_duplicate_question_ids(self):
        """Test that question ids must be unique across the bank."""
        bank = json.loads(json.dumps(BANK))
        bank["tests"][0]["sections"][0]["questions"][1]["id"] = "q12"

        assert any("duplicate" in p for p in validate_bank(bank))

    def test_invalid_bank_rejected(self):
        """Test that BankContent refuses invalid banks."""
        with pytest.raises(ValueError):
            BankContent({"tests": []})


class TestBankContent:
    """Test serving tests and questions."""

    def setup_method(self):
        self.content = BankContent(BANK)

    def test_get_test(self):
        """Test test metadata and sections."""
        test = self.content.get_test("listening-1")

        assert test.module == "listening"
        assert test.duration_minutes == 30
        assert [s.section_id for s in test.sections] == ["l1-s2", "l1-s1"]

    def test_questions_ordered_by_number(self):
        """Test that questions come back ordered and tagged with their section."""
        questions = self.content.get_questions("l1-s2")

        assert [q.question_id for q in questions] == ["q11", "q12"]
        assert all(q.section_id == "l1-s2" for q in questions)

    def test_composite_question_parsed(self):
        """Test sub-items and max score of a composite question."""
        question = self.content.get_questions("l1-s1")[0]

        assert question.is_composite
        assert question.max_score == 2.0
        assert [i.label for i in question.items] == ["1", "2"]

    def test_missing_ids(self):
        """Test that unknown tests and sections raise NotFoundError."""
        with pytest.raises(NotFoundError):
            self.content.get_test("nope")
        with pytest.raises(NotFoundError):
            self.content.get_questions("nope")
