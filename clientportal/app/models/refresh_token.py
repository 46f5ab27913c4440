"""
models/refresh_token.py — RefreshToken table definition.

No business logic. No imports from services or routes.

Rotation: every refresh revokes the presented row and points
replaced_by_token_hash at its successor, so a user's tokens form
forward-pointing chains whose tail is the only usable link.

FK policy: user_id ON DELETE CASCADE — token is owned by the user.
Users are soft-deleted in practice, so the cascade only matters for tests
and manual cleanup.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clientportal.app.extensions import db


class RevocationReason:
    ROTATED         = "rotated"
    LOGOUT          = "logout"
    REUSE_DETECTED  = "reuse_detected"
    PASSWORD_RESET  = "password_reset"
    ACCOUNT_CLAIMED = "account_claimed"


class RefreshToken(db.Model):
    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # SHA-256 hex digest of the raw refresh token, never the token itself.
    # A compromised DB does not expose usable refresh tokens.
    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    revoked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Hash of the token that superseded this one on refresh.
    replaced_by_token_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    reason_revoked: Mapped[str | None] = mapped_column(String(32), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="refresh_tokens",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<RefreshToken id={self.id} "
            f"user_id={self.user_id} "
            f"revoked={self.revoked}>"
        )
