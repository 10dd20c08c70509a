#!/usr/bin/env python3
"""
Marketplace Identity -- operator command line.

The HTTP API (api/main.py) is the normal way in. This CLI covers the jobs an
operator runs by hand against the same database and the same Settings.

Usage:
  python main.py create-user --email admin@example.com --role seller
  python main.py purge
  python main.py hash-plaintext
  python main.py gen-secret

Environment variables:
  DATABASE_URL   Backing store (default: sqlite identity.db beside this file)
  SECRET_KEY     Signing key; required unless DEBUG=true
  LEGACY_PLAINTEXT_PASSWORDS
                 Must be true while plaintext hashes still exist, so the
                 accounts keep working until hash-plaintext has run.
"""

import argparse
import getpass
import logging
import secrets
import sys

from auth.passwords import BCRYPT_MAX_BYTES, PLAINTEXT, exceeds_bcrypt_limit, hash_password, identify_scheme
from auth.service import create_auth_service
from auth.validation import password_problems, validate_email, validate_role
from core.config import get_settings
from core.errors import ValidationError


def _create_user(args: argparse.Namespace) -> int:
    """Create an account directly in the store, bypassing registration rate limits."""
    settings = get_settings()
    try:
        email = validate_email(args.email)
        role = validate_role(args.role or settings.default_role, settings)
    except ValidationError as e:
        print(f"  [!] {e.message}")
        return 2

    password = args.password or getpass.getpass("Password: ")
    problems = password_problems(password, settings)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}")
        return 2

    service = create_auth_service(settings)
    try:
        result = service.store.create(email, hash_password(password, rounds=settings.bcrypt_rounds), role)
    finally:
        service.close()

    if not result.ok:
        print(f"  [!] Could not create {email}: {result.status.value}")
        return 1
    print(f"  Created {email} ({role}), id {result.user.id}.")
    return 0


def _purge(args: argparse.Namespace) -> int:
    """Run one eviction pass immediately instead of waiting for the API's background task."""
    service = create_auth_service()
    try:
        rate_rows, ledger_rows = service.purge_expired()
    finally:
        service.close()
    print(f"  Purged {rate_rows} rate-limit row(s) and {ledger_rows} consumed refresh token(s).")
    return 0


def _hash_plaintext(args: argparse.Namespace) -> int:
    """Re-hash every stored plaintext password with bcrypt.

    Login migrates legacy hashes one account at a time; this clears the
    plaintext backlog in one sweep so the legacy flag can be switched off.
    """
    service = create_auth_service()
    migrated = failed = 0
    try:
        for user in service.store.list_users():
            if user.password_hash is None or identify_scheme(user.password_hash) != PLAINTEXT:
                continue
            plain = user.password_hash.strip()
            if exceeds_bcrypt_limit(plain):
                failed += 1
                print(f"  [!] {user.email}: password longer than {BCRYPT_MAX_BYTES} bytes, needs a reset")
                continue
            new_hash = hash_password(plain, rounds=service.settings.bcrypt_rounds)
            result = service.store.update_password(user.email, new_hash)
            if result.ok:
                migrated += 1
            else:
                failed += 1
                print(f"  [!] {user.email}: {result.status.value}")
    finally:
        service.close()

    print(f"  Re-hashed {migrated} plaintext password(s).")
    if failed:
        print(f"  [!] {failed} account(s) could not be updated.")
        return 1
    return 0


def _gen_secret(args: argparse.Namespace) -> int:
    print(secrets.token_hex(32))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="marketplace-identity",
        description="Operator tasks for the marketplace identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email ops@example.com --role seller
  python main.py purge
  LEGACY_PLAINTEXT_PASSWORDS=true python main.py hash-plaintext
  echo "SECRET_KEY=$(python main.py gen-secret)" >> .env
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account with a password")
    create.add_argument("--email", required=True, help="Account email (normalized before storage)")
    create.add_argument("--role", default=None, help="Account role (default: DEFAULT_ROLE)")
    create.add_argument(
        "--password",
        default=None,
        help="Password; prompted for when omitted so it stays out of shell history",
    )
    create.set_defaults(func=_create_user)

    purge = sub.add_parser("purge", help="Evict stale rate-limit rows and spent refresh tokens")
    purge.set_defaults(func=_purge)

    rehash = sub.add_parser("hash-plaintext", help="Re-hash every plaintext password with bcrypt")
    rehash.set_defaults(func=_hash_plaintext)

    secret = sub.add_parser("gen-secret", help="Print a random SECRET_KEY value")
    secret.set_defaults(func=_gen_secret)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    if args.command is None:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
