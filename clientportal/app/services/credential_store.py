"""
services/credential_store.py — Persistence of user credentials and lock state.

All reads and writes of User rows used by the auth flows go through here.

Lockout:
  record_failed_attempt() increments the counter and, on reaching
  MAX_FAILED_ATTEMPTS, sets locked_until in ONE UPDATE statement. Two
  concurrent wrong-password requests therefore cannot both read 4 and both
  write 5; the database serialises the increment.

  The counter is only cleared by a successful login, a provider sign-in or a
  password reset, so after a lock expires a single further failure locks the
  account again.

Errors:
  Any SQLAlchemyError is re-raised as StorageError (500). There are no retries.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clientportal.app.errors import StorageError
from clientportal.app.models.role import Role, UserRole
from clientportal.app.models.user import User

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION    = timedelta(minutes=30)

DEFAULT_ROLE  = "RegisteredUser"
FALLBACK_ROLE = "Client"

_PROVIDER_COLUMNS = {
    "google": User.google_id,
    "datev":  User.datev_id,
}

T = TypeVar("T")


def _storage_errors(fn: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Credential store failure in %s: %s", fn.__name__, exc)
            raise StorageError(exc) from exc

    return wrapper


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ── Lookups ────────────────────────────────────────────────────────────────

@_storage_errors
def find_by_email(session: Session, email: str) -> User | None:
    """Case-insensitive: stored e-mails are lower-case, so the input is lowered too."""
    return session.execute(
        select(User).where(User.email == normalize_email(email))
    ).scalar_one_or_none()


@_storage_errors
def find_by_id(session: Session, user_id: int) -> User | None:
    return session.get(User, user_id)


@_storage_errors
def email_exists(session: Session, email: str) -> bool:
    count = session.execute(
        select(func.count(User.id)).where(User.email == normalize_email(email))
    ).scalar_one()
    return count > 0


@_storage_errors
def find_by_provider_subject(session: Session, provider: str, subject: str) -> User | None:
    """Looks up a user by the immutable subject id an identity provider issued."""
    column = _PROVIDER_COLUMNS.get(provider)
    if column is None:
        raise ValueError(f"Unknown identity provider: {provider!r}")
    return session.execute(
        select(User).where(column == subject)
    ).scalar_one_or_none()


def link_provider_subject(user: User, provider: str, subject: str) -> None:
    if provider not in _PROVIDER_COLUMNS:
        raise ValueError(f"Unknown identity provider: {provider!r}")
    setattr(user, f"{provider}_id", subject)


# ── Writes ─────────────────────────────────────────────────────────────────

@_storage_errors
def save(session: Session, user: User) -> User:
    session.add(user)
    session.flush()
    return user


@_storage_errors
def record_failed_attempt(session: Session, user: User, now: datetime) -> User:
    """
    Atomically increments failed_login_attempts and locks the account for
    LOCKOUT_DURATION when the new count reaches MAX_FAILED_ATTEMPTS.

    Returns the same User instance, re-read from the database.
    """
    attempts = User.failed_login_attempts + 1
    session.execute(
        update(User)
        .where(User.id == user.id)
        .values(
            failed_login_attempts=attempts,
            locked_until=case(
                (attempts >= MAX_FAILED_ATTEMPTS, now + LOCKOUT_DURATION),
                else_=User.locked_until,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    session.refresh(user)
    return user


def reset_failed_attempts(session: Session, user: User) -> None:
    """Clears the counter and any lock. Flushed with the caller's unit of work."""
    user.failed_login_attempts = 0
    user.locked_until = None


# ── Roles ──────────────────────────────────────────────────────────────────

def role_names(user: User) -> list[str]:
    """Role names in assignment order; the first one is the primary role."""
    return [assignment.role.name for assignment in user.role_assignments]


def primary_role(user: User) -> str:
    names = role_names(user)
    return names[0] if names else FALLBACK_ROLE


@_storage_errors
def assign_role(session: Session, user: User, role_name: str) -> UserRole:
    """Assigns `role_name`, creating it as a system role on first use."""
    role = session.execute(
        select(Role).where(Role.name == role_name)
    ).scalar_one_or_none()
    if role is None:
        role = Role(name=role_name, description="", is_system_role=True)
        session.add(role)
        session.flush()

    assignment = UserRole(user_id=user.id, role_id=role.id)
    assignment.role = role
    session.add(assignment)
    user.role_assignments.append(assignment)
    session.flush()
    return assignment
