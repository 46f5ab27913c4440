"""
security/password_policy.py — Password strength rules.

Applied on registration and on password reset. Every failed rule is
reported, joined into one INVALID_REQUEST message.
"""

from __future__ import annotations

import re

from clientportal.app.errors import AppError, ErrorCode

MINIMUM_LENGTH = 12
MAXIMUM_LENGTH = 128

_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def policy_violations(password: str) -> list[str]:
    """Returns the list of human-readable rule violations (empty when valid)."""
    errors = []
    if len(password) < MINIMUM_LENGTH:
        errors.append(f"Password must be at least {MINIMUM_LENGTH} characters long.")
    if len(password) > MAXIMUM_LENGTH:
        errors.append(f"Password must be at most {MAXIMUM_LENGTH} characters long.")
    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter.")
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter.")
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number.")
    if not _SPECIAL.search(password):
        errors.append("Password must contain at least one special character.")
    return errors


def enforce_password_policy(password: str, field: str = "password") -> None:
    """Raises AppError(INVALID_REQUEST, 400) if `password` violates the policy."""
    errors = policy_violations(password)
    if errors:
        raise AppError(
            ErrorCode.INVALID_REQUEST,
            " ".join(errors),
            400,
            field=field,
        )
