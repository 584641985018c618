#!/usr/bin/env python3
"""
verify_bank.py - Validate an IELTS question bank and summarize its contents.

Usage with key file:
    python tools/verify_bank.py --bank banks/reading_bank.enc --key-file READING.key

Usage with password:
    python tools/verify_bank.py --bank banks/reading_bank.enc --password

Usage with plaintext:
    python tools/verify_bank.py --bank reading_bank.json
"""

import argparse
import getpass
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.content import BankContent, load_bank_file, validate_bank
from examengine.errors import GradingDataError
from examengine.grader import Grader


def verify_bank(bank_file: str, key_file: str = None, use_password: bool = False, verbose: bool = False) -> bool:
    """
    Verify a question bank (encrypted or plaintext).
    Returns True if valid, False otherwise.
    """
    key = None
    password = None
    try:
        if key_file:
            with open(key_file, 'rb') as f:
                key = f.read()
        if use_password:
            password = getpass.getpass("Enter decryption password: ")
        bank_data = load_bank_file(Path(bank_file), key=key, password=password)
    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
        return False
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return False

    print(f"\n[SCHEMA] Bank Schema Validation")
    print(f"{'='*60}")

    errors = validate_bank(bank_data)
    if errors:
        for err in errors:
            print(f"[ERROR] {err}")
        return False

    content = BankContent(bank_data)
    grader = Grader()
    print(f"[OK] Version: {content.version}")

    # Answer keys are checked by grading an empty answer against each question
    total_questions = 0
    for test_id in content.test_ids():
        test = content.get_test(test_id)
        print(f"\n[TEST] {test.test_id}: {test.title} ({test.module}, {test.duration_minutes} min)")
        for section in test.sections:
            questions = content.get_questions(section.section_id)
            total_questions += len(questions)
            if verbose:
                print(f"  Section {section.number}: {section.title} ({len(questions)} questions)")
            if grader.config.is_manual_module(test.module):
                continue
            for question in questions:
                try:
                    grader.grade_item(question, None)
                except GradingDataError as e:
                    errors.append(f"{test.test_id}: {e}")

    print(f"\n{'='*60}")
    print(f"[SUMMARY]")
    print(f"  Total tests: {len(content.test_ids())}")
    print(f"  Total questions: {total_questions}")

    if errors:
        print(f"\n[ERROR] ({len(errors)}):")
        for err in errors[:20]:
            print(f"  - {err}")
        if len(errors) > 20:
            print(f"  ... and {len(errors) - 20} more")
        return False

    print(f"\n[OK] Bank validation PASSED")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Validate question bank schema and answer keys.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Verify encrypted bank
  python tools/verify_bank.py --bank banks/reading_bank.enc --key-file READING.key

  # Verify plaintext bank (during authoring)
  python tools/verify_bank.py --bank reading_bank.json --verbose
        """
    )
    parser.add_argument("--bank", required=True, help="Path to bank file (.enc or .json)")
    parser.add_argument("--key-file", help="Encryption key file (for key-file encrypted banks)")
    parser.add_argument(
        "--password",
        action="store_true",
        help="Use password to decrypt (for password-encrypted banks)"
    )
    parser.add_argument("--verbose", action="store_true", help="Show per-section details")

    args = parser.parse_args()

    success = verify_bank(args.bank, args.key_file, args.password, args.verbose)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
