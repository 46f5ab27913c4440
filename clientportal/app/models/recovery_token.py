"""
models/recovery_token.py — PasswordResetToken and EmailVerificationToken.

Both are single-use: once is_used is set the row is permanently invalid,
whatever its expiry. Only the SHA-256 digest of the raw token is stored.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from clientportal.app.extensions import db


class _SingleUseTokenMixin:

    id: Mapped[int] = mapped_column(primary_key=True)

    @declared_attr
    def user_id(cls) -> Mapped[int]:
        return mapped_column(
            ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def user(cls) -> Mapped["User"]:  # noqa: F821
        return relationship("User")

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_used: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class PasswordResetToken(_SingleUseTokenMixin, db.Model):
    __tablename__ = "password_reset_tokens"

    def __repr__(self) -> str:  # pragma: no cover
        return f"<PasswordResetToken id={self.id} user_id={self.user_id} used={self.is_used}>"


class EmailVerificationToken(_SingleUseTokenMixin, db.Model):
    __tablename__ = "email_verification_tokens"

    def __repr__(self) -> str:  # pragma: no cover
        return f"<EmailVerificationToken id={self.id} user_id={self.user_id} used={self.is_used}>"
