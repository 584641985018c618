"""
Content collaborator backed by a question bank file.

A bank holds tests, their sections and questions with answer keys. Banks
may be plain JSON or Fernet-encrypted, either with a key file or with a
password (PBKDF2 key derivation, salt stored after a ``SALT`` prefix).
"""

import base64
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import NotFoundError
from .models import Test, Question, MODULES

SALT_PREFIX = b'SALT'
SALT_LENGTH = 16


class ContentProvider(ABC):
    """Read-only access to tests and questions."""

    @abstractmethod
    def get_test(self, test_id: str) -> Test:
        """Test with its duration and sections."""

    @abstractmethod
    def get_questions(self, section_id: str) -> List[Question]:
        """Questions of a section ordered by number."""


def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    key_material = kdf.derive(password.encode())
    return base64.urlsafe_b64encode(key_material)


def encrypt_bank(plaintext: bytes, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Encrypt bank JSON bytes.

    Args:
        plaintext: Bank JSON
        key: Fernet key (key file contents)
        password: Password for password-based encryption

    Returns:
        Encrypted bytes; password-based output starts with SALT + salt
    """
    if password:
        salt = os.urandom(SALT_LENGTH)
        fernet = Fernet(derive_key_from_password(password, salt))
        return SALT_PREFIX + salt + fernet.encrypt(plaintext)
    if key:
        return Fernet(key).encrypt(plaintext)
    raise ValueError("Either a key or a password is required")


def decrypt_bank(data: bytes, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Decrypt bank bytes produced by encrypt_bank.

    Raises:
        ValueError: If the credentials are missing or wrong, or the data is corrupted
    """
    try:
        if data.startswith(SALT_PREFIX):
            if not password:
                raise ValueError("This bank was encrypted with a password")
            salt = data[len(SALT_PREFIX):len(SALT_PREFIX) + SALT_LENGTH]
            token = data[len(SALT_PREFIX) + SALT_LENGTH:]
            return Fernet(derive_key_from_password(password, salt)).decrypt(token)
        if not key:
            raise ValueError("This bank was encrypted with a key file")
        return Fernet(key).decrypt(data)
    except InvalidToken:
        raise ValueError("Decryption failed: invalid key/password or corrupted file")


def load_bank_file(path: Path, key: Optional[bytes] = None, password: Optional[str] = None) -> dict:
    """
    Read a bank from disk. ``.json`` files are read as plaintext, anything
    else is decrypted with the given key or password.
    """
    path = Path(path)
    if path.suffix.lower() == '.json':
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    with open(path, 'rb') as f:
        encrypted_data = f.read()
    try:
        return json.loads(decrypt_bank(encrypted_data, key=key, password=password))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in bank: {e}")


def validate_bank(bank: dict) -> List[str]:
    """
    Check a bank's structure.

    Returns:
        List of problems; empty when the bank is usable
    """
    problems = []
    tests = bank.get('tests')
    if not isinstance(tests, list) or not tests:
        return ["Bank must contain a non-empty 'tests' list"]

    seen_questions = set()
    for t in tests:
        test_id = t.get('id', '?')
        for key in ('id', 'module', 'duration_minutes'):
            if key not in t:
                problems.append(f"Test {test_id}: missing '{key}'")
        if t.get('module') not in MODULES:
            problems.append(f"Test {test_id}: unknown module '{t.get('module')}'")
        duration = t.get('duration_minutes')
        if not isinstance(duration, (int, float)) or duration <= 0:
            problems.append(f"Test {test_id}: duration_minutes must be positive")
        for s in t.get('sections') or []:
            for q in s.get('questions') or []:
                qid = q.get('id')
                if qid is None or 'type' not in q:
                    problems.append(f"Test {test_id}: question without 'id' or 'type'")
                    continue
                if qid in seen_questions:
                    problems.append(f"Test {test_id}: duplicate question id '{qid}'")
                seen_questions.add(qid)
    return problems


class BankContent(ContentProvider):
    """ContentProvider serving tests from a loaded bank."""

    def __init__(self, bank: dict):
        problems = validate_bank(bank)
        if problems:
            raise ValueError("Invalid bank: " + "; ".join(problems))

        self.version = bank.get('version', 'unknown')
        self._tests: Dict[str, Test] = {}
        self._questions: Dict[str, List[Question]] = {}

        for test_data in bank['tests']:
            test = Test.from_dict(test_data)
            self._tests[test.test_id] = test
            for section, section_data in zip(test.sections, test_data.get('sections') or []):
                questions = [
                    Question.from_dict(q, section_id=section.section_id)
                    for q in section_data.get('questions') or []
                ]
                questions.sort(key=lambda q: q.number)
                self._questions[section.section_id] = questions

    @classmethod
    def from_file(cls, path: Path, key: Optional[bytes] = None, password: Optional[str] = None) -> 'BankContent':
        return cls(load_bank_file(path, key=key, password=password))

    def get_test(self, test_id: str) -> Test:
        test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError(f"Test '{test_id}' not found")
        return test

    def get_questions(self, section_id: str) -> List[Question]:
        questions = self._questions.get(section_id)
        if questions is None:
            raise NotFoundError(f"Section '{section_id}' not found")
        return list(questions)

    def test_ids(self) -> List[str]:
        return list(self._tests)
