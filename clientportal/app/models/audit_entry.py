"""
models/audit_entry.py — Append-only audit trail of security-relevant actions.

Rows are inserted by audit_service.record() and never updated or deleted.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clientportal.app.extensions import db


class AuditAction:
    LOGIN_FAILED         = "LOGIN_FAILED"
    ACCOUNT_LOCKED       = "ACCOUNT_LOCKED"
    REFRESH_TOKEN_REUSE  = "REFRESH_TOKEN_REUSE"
    PASSWORD_RESET       = "PASSWORD_RESET"
    EMAIL_VERIFIED       = "EMAIL_VERIFIED"
    USER_REGISTERED      = "USER_REGISTERED"
    PROVIDER_LINKED      = "PROVIDER_LINKED"
    ACCOUNT_CLAIMED      = "ACCOUNT_CLAIMED"


class AuditEntry(db.Model):
    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(primary_key=True)

    # NULL for system actions and for failures against unknown accounts.
    actor_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<AuditEntry id={self.id} action={self.action!r}>"
