#!/usr/bin/env python3
"""
build_bank.py - Encrypt plaintext JSON IELTS question banks.

Usage with key file:
    python tools/build_bank.py --in reading_bank.json --out banks/reading_bank.enc --key-file READING.key

Usage with password:
    python tools/build_bank.py --in reading_bank.json --out banks/reading_bank.enc --password

Generate a key file:
    python tools/build_bank.py --generate-key READING.key
"""

import argparse
import getpass
import hashlib
import json
import sys
from pathlib import Path

from cryptography.fernet import Fernet

sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.content import encrypt_bank, validate_bank


def generate_key(output_file: str) -> None:
    """Generate a new Fernet key and save it to file."""
    key = Fernet.generate_key()
    with open(output_file, 'wb') as f:
        f.write(key)
    print(f"[OK] Encryption key written to {output_file}")
    print("[!] SECURITY: Store this key securely. Never commit it to version control.")


def build_bank(in_file: str, out_file: str, key_file: str = None, use_password: bool = False) -> None:
    """Validate and encrypt a plaintext JSON question bank."""
    try:
        key = None
        password = None
        if use_password:
            password = getpass.getpass("Enter encryption password: ")
            if password != getpass.getpass("Confirm password: "):
                print("[ERROR] Passwords do not match", file=sys.stderr)
                sys.exit(1)
            if len(password) < 8:
                print("[ERROR] Password must be at least 8 characters", file=sys.stderr)
                sys.exit(1)
        else:
            with open(key_file, 'rb') as f:
                key = f.read()

        with open(in_file, 'rb') as f:
            plaintext = f.read()

        try:
            bank_data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            print(f"[ERROR] Invalid JSON in input file: {e}", file=sys.stderr)
            sys.exit(1)

        problems = validate_bank(bank_data)
        if problems:
            print("[ERROR] Bank is not valid:", file=sys.stderr)
            for problem in problems:
                print(f"  - {problem}", file=sys.stderr)
            sys.exit(1)

        tests = bank_data['tests']
        question_count = sum(
            len(s.get('questions') or []) for t in tests for s in t.get('sections') or []
        )
        print("[OK] Input bank validated")
        print(f"  Version: {bank_data.get('version', 'unknown')}")
        print(f"  Tests: {len(tests)}, questions: {question_count}")

        final_data = encrypt_bank(plaintext, key=key, password=password)
        sha256_hash = hashlib.sha256(final_data).hexdigest()

        Path(out_file).parent.mkdir(parents=True, exist_ok=True)
        with open(out_file, 'wb') as f:
            f.write(final_data)

        print("\n[OK] Success: Bank encrypted")
        print(f"  Output: {out_file} ({len(final_data)} bytes)")
        print(f"  Method: {'Password-based' if password else 'Key file'}")
        print(f"  SHA256: {sha256_hash}")

    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"[ERROR] Error encrypting bank: {e}", file=sys.stderr)
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Encrypt a plaintext JSON question bank.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tools/build_bank.py --generate-key READING.key
  python tools/build_bank.py --in reading_bank.json --out banks/reading_bank.enc --key-file READING.key
  python tools/build_bank.py --in listening_bank.json --out banks/listening_bank.enc --password
        """
    )
    parser.add_argument("--in", dest="in_file", help="Input plaintext JSON bank")
    parser.add_argument("--out", help="Output encrypted bank file (.enc)")
    parser.add_argument("--key-file", help="File containing the encryption key")
    parser.add_argument(
        "--password",
        action="store_true",
        help="Use password-based encryption instead of a key file"
    )
    parser.add_argument("--generate-key", metavar="KEY_FILE", help="Write a new key file and exit")

    args = parser.parse_args()

    if args.generate_key:
        generate_key(args.generate_key)
        return

    if not args.in_file or not args.out:
        print("[ERROR] --in and --out are required", file=sys.stderr)
        sys.exit(1)
    if args.password == bool(args.key_file):
        print("[ERROR] Specify exactly one of --password or --key-file", file=sys.stderr)
        sys.exit(1)

    build_bank(args.in_file, args.out, args.key_file, args.password)


if __name__ == "__main__":
    main()
