"""
services/recovery_service.py — Password reset and e-mail verification tokens.

Both token kinds are opaque random strings mailed to the user. Only their
SHA-256 digest is stored. A token is usable once, before its expiry:

  password reset       1 hour
  e-mail verification  24 hours

Unknown, expired and already-used tokens all fail with the same
INVALID_TOKEN error so a caller cannot tell which case applied.

request_reset() and resend_verification() always report success and return
identical bodies whether or not the address belongs to an account.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.models.audit_entry import AuditAction
from clientportal.app.models.recovery_token import EmailVerificationToken, PasswordResetToken
from clientportal.app.models.refresh_token import RevocationReason
from clientportal.app.security.password_hasher import hash_password
from clientportal.app.security.password_policy import enforce_password_policy
from clientportal.app.services import audit_service, credential_store, session_service
from clientportal.app.services.mail_service import MailBatch, MailDispatcher, redact_email
from clientportal.app.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

PASSWORD_RESET_TTL      = timedelta(hours=1)
EMAIL_VERIFICATION_TTL  = timedelta(hours=24)

RESET_REQUESTED_MESSAGE = (
    "If an account exists for this e-mail address, "
    "you will receive instructions to reset your password."
)
VERIFICATION_RESENT_MESSAGE = (
    "If an unconfirmed account exists for this e-mail address, "
    "a new confirmation link has been sent."
)


# ── Private helpers ────────────────────────────────────────────────────────

def _new_raw_token() -> str:
    return secrets.token_urlsafe(32)


def _invalid_token(field: str = "token") -> AppError:
    return AppError(
        ErrorCode.INVALID_TOKEN,
        "The link is invalid or has expired. Please request a new one.",
        400,
        field=field,
    )


def _consume(session: Session, model, raw_token: str, now: datetime):
    """
    Finds a live token row and marks it used. The UPDATE is conditional on
    is_used being false, so a token cannot be consumed twice concurrently.

    Raises AppError(INVALID_TOKEN, 400) for unknown, used or expired tokens.
    """
    record = session.execute(
        select(model).where(model.token_hash == session_service.hash_token(raw_token))
    ).scalar_one_or_none()
    if record is None or record.is_used or as_utc(record.expires_at) <= now:
        raise _invalid_token()

    consumed = session.execute(
        update(model)
        .where(model.id == record.id, model.is_used.is_(False))
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        # A concurrent request consumed this token first.
        session.rollback()
        raise _invalid_token()
    return record


def issue_email_verification(session: Session, user_id: int, now: datetime | None = None) -> str:
    """Persists a new 24-hour verification token for `user_id` and returns the raw value."""
    now = now or utcnow()
    raw = _new_raw_token()
    session.add(EmailVerificationToken(
        user_id=user_id,
        token_hash=session_service.hash_token(raw),
        expires_at=now + EMAIL_VERIFICATION_TTL,
    ))
    session.flush()
    return raw


# ── Password reset ─────────────────────────────────────────────────────────

def request_reset(
        session: Session,
        dispatcher: MailDispatcher | MailBatch,
        email: str,
        ip_address: str | None = None,
        now: datetime | None = None,
) -> dict:
    """
    Starts a password reset. Always returns the same body.

      active account    → 1-hour token stored, reset mail sent
      unknown address   → "no account found" mail sent
      inactive account  → nothing stored or sent, logged only
    """
    now = now or utcnow()
    email = credential_store.normalize_email(email)
    user = credential_store.find_by_email(session, email)

    if user is None:
        logger.info("Password reset requested for unknown address %s", redact_email(email))
        dispatcher.password_reset_account_not_found(email)
    elif not user.is_active or user.is_deleted:
        logger.info("Password reset requested for inactive user %s; ignored", user.id)
    else:
        raw = _new_raw_token()
        session.add(PasswordResetToken(
            user_id=user.id,
            token_hash=session_service.hash_token(raw),
            expires_at=now + PASSWORD_RESET_TTL,
        ))
        session.flush()
        logger.info("Password reset token issued for user %s (ip=%s)", user.id, ip_address)
        dispatcher.password_reset(user.email, user.first_name, raw)

    return {"message": RESET_REQUESTED_MESSAGE}


def reset_password(
        session: Session,
        raw_token: str,
        new_password: str,
        ip_address: str | None = None,
        bcrypt_rounds: int = 12,
        now: datetime | None = None,
) -> dict:
    """
    Sets a new password using a reset token.

    On success, in one unit of work: password hash replaced, token marked
    used, failed-attempt counter and lock cleared, and every live refresh
    token of the user revoked.

    Raises:
      AppError(INVALID_TOKEN, 400)   — unknown, used or expired token
      AppError(INVALID_REQUEST, 400) — new password violates the policy
    """
    now = now or utcnow()
    enforce_password_policy(new_password, field="newPassword")

    record = _consume(session, PasswordResetToken, raw_token, now)
    user = credential_store.find_by_id(session, record.user_id)
    if user is None or user.is_deleted:
        raise _invalid_token()

    user.password_hash = hash_password(new_password, rounds=bcrypt_rounds)
    credential_store.reset_failed_attempts(session, user)
    revoked = session_service.revoke_all_for_user(
        session, user.id, RevocationReason.PASSWORD_RESET, now=now,
    )
    audit_service.record(
        session,
        AuditAction.PASSWORD_RESET,
        "User",
        entity_id=user.id,
        actor_user_id=user.id,
        ip_address=ip_address,
        detail=f"revoked {revoked} refresh token(s)",
    )
    session.flush()
    logger.info("Password reset for user %s; %s session(s) revoked", user.id, revoked)

    return {"message": "Your password has been reset. Please sign in with the new password."}


# ── E-mail verification ────────────────────────────────────────────────────

def verify_email(
        session: Session,
        dispatcher: MailDispatcher | MailBatch,
        raw_token: str,
        ip_address: str | None = None,
        now: datetime | None = None,
) -> dict:
    """
    Confirms the e-mail address behind a verification token and sends the
    welcome mail.

    Raises:
      AppError(INVALID_TOKEN, 400) — unknown, used or expired token
    """
    now = now or utcnow()
    record = _consume(session, EmailVerificationToken, raw_token, now)
    user = credential_store.find_by_id(session, record.user_id)
    if user is None or user.is_deleted:
        raise _invalid_token()

    user.is_email_confirmed = True
    audit_service.record(
        session,
        AuditAction.EMAIL_VERIFIED,
        "User",
        entity_id=user.id,
        actor_user_id=user.id,
        ip_address=ip_address,
    )
    session.flush()
    dispatcher.welcome(user.email, user.first_name)

    return {"message": "Your e-mail address has been confirmed. You can now sign in."}


def resend_verification(
        session: Session,
        dispatcher: MailDispatcher | MailBatch,
        email: str,
        now: datetime | None = None,
) -> dict:
    """Issues a fresh verification token for an unconfirmed active account. Always succeeds."""
    now = now or utcnow()
    user = credential_store.find_by_email(session, email)

    if user is None or user.is_email_confirmed or not user.is_active or user.is_deleted:
        logger.info("Verification resend ignored for %s", redact_email(email))
    else:
        raw = issue_email_verification(session, user.id, now=now)
        dispatcher.email_verification(user.email, user.first_name, raw)

    return {"message": VERIFICATION_RESENT_MESSAGE}
