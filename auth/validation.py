"""
auth/validation.py -- Input rules for registration, login and password change.

Every violation raises core.errors.ValidationError with a terse, user-safe
message. Nothing here touches the store: validation must not reveal whether
an email is registered.
"""

from __future__ import annotations

import re

from auth.passwords import BCRYPT_MAX_BYTES, exceeds_bcrypt_limit
from auth.store import normalize_email
from core.config import Settings
from core.errors import ValidationError

EMAIL_MAX_LENGTH = 254

# Pragmatic address shape: one @, no whitespace, a dotted domain.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "qwerty", "abc123", "password123",
        "admin", "letmein", "welcome", "monkey", "dragon",
        "master", "hello", "login", "pass", "1234",
    }
)  # fmt: skip


def validate_email(email: str) -> str:
    """Return the normalized email or raise ValidationError."""
    if not isinstance(email, str):
        raise ValidationError("A valid email address is required.")
    normalized = normalize_email(email)
    if not normalized or len(normalized) > EMAIL_MAX_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("A valid email address is required.")
    return normalized


def password_problems(password: str, settings: Settings) -> list[str]:
    """Return every policy violation for a new password (empty list = acceptable)."""
    problems: list[str] = []
    if len(password) < settings.password_min_length:
        problems.append(f"Password must be at least {settings.password_min_length} characters long.")
    if len(password) > settings.password_max_length:
        problems.append(f"Password must be at most {settings.password_max_length} characters long.")
    elif exceeds_bcrypt_limit(password):
        problems.append(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long.")
    if settings.password_require_mixed:
        if not re.search(r"[A-Z]", password):
            problems.append("Password must contain an uppercase letter.")
        if not re.search(r"[a-z]", password):
            problems.append("Password must contain a lowercase letter.")
        if not re.search(r"\d", password):
            problems.append("Password must contain a number.")
        if not _SPECIAL_RE.search(password):
            problems.append("Password must contain a special character.")
    if password.lower() in COMMON_PASSWORDS:
        problems.append("Password is too common.")
    return problems


def validate_new_password(password: str, settings: Settings) -> None:
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required.")
    problems = password_problems(password, settings)
    if problems:
        raise ValidationError(" ".join(problems))


def validate_login_password(password: str, settings: Settings) -> None:
    """Shape check only -- policy is never re-applied at login, old passwords must still work."""
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required.")
    if len(password) > settings.password_max_length or exceeds_bcrypt_limit(password):
        raise ValidationError("Password is too long.")


def validate_role(role: str, settings: Settings) -> str:
    if role not in settings.allowed_roles:
        raise ValidationError(f"Role must be one of: {', '.join(settings.allowed_roles)}.")
    return role
