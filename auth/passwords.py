"""
auth/passwords.py -- Versioned password hashing (bcrypt, direct usage, no passlib wrapper).

Schemes, identified by the stored hash's prefix:

  bcrypt     "$2a$" / "$2b$" / "$2y$"   current scheme; cost = Settings.bcrypt_rounds
  sha256     "sha256$<salt>$<hex>"      deprecated salted SHA-256
  plaintext  anything else              deprecated; only honoured when
                                        LEGACY_PLAINTEXT_PASSWORDS=true

verify_password() accepts every enabled scheme. needs_rehash() tells the login
path to transparently re-hash with bcrypt after a successful verification --
that is the whole legacy-migration mechanism; users never see it.

Configuration comes in as plain values (rounds, allow_plaintext) so a service
built from its own Settings hashes and verifies under that Settings. Omitted
values fall back to get_settings().

bcrypt only reads the first 72 bytes of its input, and bcrypt 5 raises
ValueError past that point instead of truncating. BCRYPT_MAX_BYTES is the
ceiling the password policy enforces, so no accepted password ever reaches it.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from functools import lru_cache

import bcrypt

from core.config import get_settings

logger = logging.getLogger("identity.auth.passwords")

BCRYPT = "bcrypt"
SHA256 = "sha256"
PLAINTEXT = "plaintext"

BCRYPT_MAX_BYTES = 72

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def identify_scheme(hashed: str) -> str:
    if hashed.startswith(_BCRYPT_PREFIXES):
        return BCRYPT
    if hashed.startswith(SHA256 + "$"):
        return SHA256
    return PLAINTEXT


def exceeds_bcrypt_limit(plain: str) -> bool:
    return len(plain.encode("utf-8")) > BCRYPT_MAX_BYTES


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for input over BCRYPT_MAX_BYTES; validation rejects such
    passwords before they get here.
    """
    if exceeds_bcrypt_limit(plain):
        raise ValueError(f"password exceeds {BCRYPT_MAX_BYTES} bytes")
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def hash_legacy_sha256(plain: str, salt: str) -> str:
    """Produce a deprecated-scheme hash. Used to seed fixtures and migration tests."""
    digest = hashlib.sha256((salt + plain).encode("utf-8")).hexdigest()
    return f"{SHA256}${salt}${digest}"


def verify_password(plain: str, hashed: str | None, allow_plaintext: bool | None = None) -> bool:
    """Return True if plain matches hashed under its scheme. Never raises."""
    if not hashed:
        return False
    scheme = identify_scheme(hashed)
    if scheme == BCRYPT:
        # No bcrypt hash can match input bcrypt refuses to read.
        if exceeds_bcrypt_limit(plain):
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            logger.warning("bcrypt could not check a password against the stored hash; treating as mismatch")
            return False
    if scheme == SHA256:
        parts = hashed.split("$")
        if len(parts) != 3:
            return False
        expected = hash_legacy_sha256(plain, parts[1])
        return hmac.compare_digest(expected.encode("utf-8"), hashed.encode("utf-8"))
    if allow_plaintext is None:
        allow_plaintext = get_settings().legacy_plaintext_passwords
    if not allow_plaintext:
        return False
    return hmac.compare_digest(plain.strip().encode("utf-8"), hashed.strip().encode("utf-8"))


def needs_rehash(hashed: str, rounds: int | None = None) -> bool:
    """True for any deprecated scheme, or bcrypt below the configured cost."""
    if identify_scheme(hashed) != BCRYPT:
        return True
    try:
        cost = int(hashed.split("$")[2])
    except (IndexError, ValueError):
        return True
    return cost < (rounds if rounds is not None else get_settings().bcrypt_rounds)


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("identity_timing_dummy", rounds=rounds)


def dummy_verify(plain: str, rounds: int | None = None) -> None:
    """Burn one bcrypt verification so an unknown email costs the same as a wrong password [C1]."""
    verify_password(plain, _dummy_hash(rounds if rounds is not None else get_settings().bcrypt_rounds))
