"""
models/user.py — User table definition and its computed credential state.

Lock state has a single source of truth: `locked_until`. There is no
separate "is_locked" flag to keep in sync; credential_state() derives
Active / Locked(until) / Inactive from the row.

No business logic beyond that derivation. No imports from services or routes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clientportal.app.extensions import db
from clientportal.app.timeutils import as_utc


# ── Credential state ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class Locked:
    until: datetime


@dataclass(frozen=True)
class Inactive:
    pass


CredentialState = Active | Locked | Inactive


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
        CheckConstraint(
            "failed_login_attempts >= 0",
            name="ck_users_failed_attempts_nonnegative",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # Always stored trimmed and lower-cased, so the UNIQUE constraint gives
    # case-insensitive uniqueness.
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    # Empty string for accounts created through federated sign-in only;
    # an empty hash never verifies.
    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true",
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )
    is_email_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )

    failed_login_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # One slot per supported identity provider.
    google_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    datev_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    role_assignments: Mapped[list["UserRole"]] = relationship(  # noqa: F821
        "UserRole",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="[UserRole.assigned_at, UserRole.id]",
        lazy="selectin",
    )

    refresh_tokens: Mapped[list["RefreshToken"]] = relationship(  # noqa: F821
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def credential_state(self, now: datetime) -> CredentialState:
        """
        A running lock is reported before inactivity, matching the order in
        which login checks them. A lock whose expiry is not strictly in the
        future counts as no lock.
        """
        until = as_utc(self.locked_until)
        if until is not None and until > now:
            return Locked(until=until)
        if not self.is_active or self.is_deleted:
            return Inactive()
        return Active()

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} email={self.email!r}>"
