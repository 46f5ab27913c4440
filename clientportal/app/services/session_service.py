"""
services/session_service.py — Login, refresh-token rotation, logout.

Credential state machine (computed by User.credential_state):

  Active   --wrong password-->  Active (counter + 1)
  Active   --5th failure----->  Locked(now + 30 min)
  Locked   --any login before expiry-->  rejected, counter untouched
  Locked   --login after expiry------->  treated as Active
  Inactive --any login-->  rejected, whatever the password

Login checks run in a fixed order so responses cannot be used to test
passwords of locked or inactive accounts:
  1. unknown e-mail        → INVALID_CREDENTIALS (after a dummy bcrypt check)
  2. Locked                → ACCOUNT_LOCKED
  3. Inactive              → ACCOUNT_INACTIVE
  4. wrong password        → INVALID_CREDENTIALS (counter incremented atomically)
  5. success               → counter cleared, last_login_at stamped, new pair

Refresh-token rotation:
  Every refresh revokes the presented token with a conditional UPDATE
  (WHERE id = ? AND revoked = false) and records the successor's hash in
  replaced_by_token_hash. Of two concurrent refreshes with the same token
  exactly one matches a row; the other gets REFRESH_TOKEN_REVOKED.

  Presenting a token that was already revoked by rotation is treated as
  theft: every live token further down its replacement chain is revoked
  (reason "reuse_detected"), an audit entry is written, and the request
  fails with REFRESH_TOKEN_REVOKED.

Transactions:
  The route commits successful calls. Failure paths that must leave a trace
  (failed-attempt counter, reuse revocation, audit rows) commit before
  raising, because the route never commits a failed request.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.models.audit_entry import AuditAction
from clientportal.app.models.refresh_token import RefreshToken, RevocationReason
from clientportal.app.models.user import Inactive, Locked, User
from clientportal.app.security.password_hasher import dummy_verify, verify_password
from clientportal.app.security.token_signer import TokenSigner
from clientportal.app.services import audit_service, credential_store
from clientportal.app.services.mail_service import redact_email
from clientportal.app.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────

def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of an opaque token. Only digests are ever stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _invalid_credentials() -> AppError:
    return AppError(
        ErrorCode.INVALID_CREDENTIALS,
        "The e-mail address or password is incorrect.",
        401,
    )


def _ensure_can_sign_in(user: User, now: datetime) -> None:
    """Raises ACCOUNT_LOCKED / ACCOUNT_INACTIVE for accounts that may not sign in."""
    state = user.credential_state(now)
    if isinstance(state, Locked):
        logger.info("Sign-in refused for locked user %s (until %s)", user.id, state.until.isoformat())
        raise AppError(
            ErrorCode.ACCOUNT_LOCKED,
            "The account is temporarily locked after repeated failed sign-in attempts. "
            "Please try again later or reset your password.",
            401,
        )
    if isinstance(state, Inactive):
        logger.info("Sign-in refused for inactive user %s", user.id)
        raise AppError(
            ErrorCode.ACCOUNT_INACTIVE,
            "This account is inactive. Please contact support.",
            401,
        )


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": credential_store.primary_role(user),
    }


def _issue_pair(
        session: Session,
        signer: TokenSigner,
        user: User,
        now: datetime,
        refresh_token_days: int,
        ip_address: str | None,
        user_agent: str | None,
) -> tuple[dict, str]:
    """
    Issues an access token and a persisted refresh token for `user`.
    Returns (response dict, refresh token hash).
    """
    access_token, expires_in = signer.issue_access_token(
        user.id,
        user.email,
        user.first_name,
        user.last_name,
        credential_store.role_names(user),
    )
    raw_refresh = signer.issue_refresh_token()
    refresh_hash = hash_token(raw_refresh)

    session.add(RefreshToken(
        user_id=user.id,
        token_hash=refresh_hash,
        expires_at=now + timedelta(days=refresh_token_days),
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
    ))
    session.flush()

    return {
        "accessToken": access_token,
        "refreshToken": raw_refresh,
        "expiresIn": expires_in,
        "tokenType": "Bearer",
        "user": _user_summary(user),
    }, refresh_hash


def _find_refresh_token(session: Session, raw_token: str) -> RefreshToken | None:
    return session.execute(
        select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_token))
    ).scalar_one_or_none()


def _revoke_descendants(session: Session, record: RefreshToken, now: datetime) -> int:
    """
    Follows replaced_by_token_hash from `record` and revokes every live
    successor. Returns how many tokens were revoked.
    """
    revoked = 0
    seen: set[str] = set()
    next_hash = record.replaced_by_token_hash
    while next_hash and next_hash not in seen:
        seen.add(next_hash)
        successor = session.execute(
            select(RefreshToken).where(RefreshToken.token_hash == next_hash)
        ).scalar_one_or_none()
        if successor is None:
            break
        if not successor.revoked:
            successor.revoked = True
            successor.revoked_at = now
            successor.reason_revoked = RevocationReason.REUSE_DETECTED
            revoked += 1
        next_hash = successor.replaced_by_token_hash
    session.flush()
    return revoked


# ── Public service functions ───────────────────────────────────────────────

def login(
        session: Session,
        signer: TokenSigner,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_token_days: int = 7,
        bcrypt_rounds: int = 12,
        now: datetime | None = None,
) -> dict:
    """
    Authenticates e-mail + password and opens a session.

    Raises:
      AppError(INVALID_CREDENTIALS, 401) — unknown e-mail or wrong password
      AppError(ACCOUNT_LOCKED, 401)      — lock has not expired yet
      AppError(ACCOUNT_INACTIVE, 401)    — deactivated or deleted account

    Returns: {accessToken, refreshToken, expiresIn, tokenType, user}
    """
    now = now or utcnow()
    user = credential_store.find_by_email(session, email)

    if user is None:
        # Same bcrypt cost as a real check, so timing does not reveal the miss.
        dummy_verify(password, bcrypt_rounds)
        logger.info("Login failed: no account for %s", redact_email(email))
        audit_service.record(
            session,
            AuditAction.LOGIN_FAILED,
            "User",
            ip_address=ip_address,
            detail=f"unknown e-mail {redact_email(email)}",
        )
        session.commit()
        raise _invalid_credentials()

    _ensure_can_sign_in(user, now)

    if not verify_password(password, user.password_hash):
        user = credential_store.record_failed_attempt(session, user, now)
        audit_service.record(
            session,
            AuditAction.LOGIN_FAILED,
            "User",
            entity_id=user.id,
            actor_user_id=user.id,
            ip_address=ip_address,
            detail=f"wrong password, attempt {user.failed_login_attempts}",
        )
        if isinstance(user.credential_state(now), Locked):
            logger.warning(
                "User %s locked after %s failed sign-in attempts",
                user.id, user.failed_login_attempts,
            )
            audit_service.record(
                session,
                AuditAction.ACCOUNT_LOCKED,
                "User",
                entity_id=user.id,
                actor_user_id=user.id,
                ip_address=ip_address,
                detail=f"locked until {as_utc(user.locked_until).isoformat()}",
            )
        else:
            logger.info("Login failed: wrong password for user %s", user.id)
        session.commit()
        raise _invalid_credentials()

    credential_store.reset_failed_attempts(session, user)
    user.last_login_at = now
    result, _ = _issue_pair(session, signer, user, now, refresh_token_days, ip_address, user_agent)
    logger.info("User %s signed in", user.id)
    return result


def sign_in_user(
        session: Session,
        signer: TokenSigner,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_token_days: int = 7,
        now: datetime | None = None,
) -> dict:
    """
    Opens a session for a user whose identity was established elsewhere
    (an identity provider). Password state is ignored; lock and inactivity
    are not.
    """
    now = now or utcnow()
    _ensure_can_sign_in(user, now)
    credential_store.reset_failed_attempts(session, user)
    user.last_login_at = now
    result, _ = _issue_pair(session, signer, user, now, refresh_token_days, ip_address, user_agent)
    return result


def refresh(
        session: Session,
        signer: TokenSigner,
        raw_refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_token_days: int = 7,
        now: datetime | None = None,
) -> dict:
    """
    Exchanges a refresh token for a new access + refresh pair.

    Raises (checked in this order):
      AppError(REFRESH_TOKEN_INVALID, 401) — unknown token
      AppError(REFRESH_TOKEN_EXPIRED, 401) — past expires_at
      AppError(REFRESH_TOKEN_REVOKED, 401) — revoked, reused, or lost a race
      AppError(ACCOUNT_INACTIVE, 401)      — owner deactivated or deleted
    """
    now = now or utcnow()
    record = _find_refresh_token(session, raw_refresh_token)

    if record is None:
        raise AppError(
            ErrorCode.REFRESH_TOKEN_INVALID,
            "The refresh token is invalid.",
            401,
        )

    if as_utc(record.expires_at) <= now:
        raise AppError(
            ErrorCode.REFRESH_TOKEN_EXPIRED,
            "The refresh token has expired. Please sign in again.",
            401,
        )

    if record.revoked:
        if record.reason_revoked == RevocationReason.ROTATED:
            revoked = _revoke_descendants(session, record, now)
            logger.warning(
                "Refresh token reuse detected for user %s; revoked %s descendant token(s)",
                record.user_id, revoked,
            )
            audit_service.record(
                session,
                AuditAction.REFRESH_TOKEN_REUSE,
                "RefreshToken",
                entity_id=record.id,
                actor_user_id=record.user_id,
                ip_address=ip_address,
                detail=f"revoked {revoked} descendant token(s)",
            )
            session.commit()
        raise AppError(
            ErrorCode.REFRESH_TOKEN_REVOKED,
            "The refresh token has been revoked. Please sign in again.",
            401,
        )

    user = credential_store.find_by_id(session, record.user_id)
    if user is None or isinstance(user.credential_state(now), Inactive):
        raise AppError(
            ErrorCode.ACCOUNT_INACTIVE,
            "This account is inactive. Please contact support.",
            401,
        )

    result, new_hash = _issue_pair(
        session, signer, user, now, refresh_token_days, ip_address, user_agent,
    )

    rotated = session.execute(
        update(RefreshToken)
        .where(RefreshToken.id == record.id, RefreshToken.revoked.is_(False))
        .values(
            revoked=True,
            revoked_at=now,
            reason_revoked=RevocationReason.ROTATED,
            replaced_by_token_hash=new_hash,
        )
        .execution_options(synchronize_session=False)
    )
    if rotated.rowcount != 1:
        # A concurrent refresh rotated this token first.
        session.rollback()
        raise AppError(
            ErrorCode.REFRESH_TOKEN_REVOKED,
            "The refresh token has been revoked. Please sign in again.",
            401,
        )

    return result


def logout(session: Session, raw_refresh_token: str, now: datetime | None = None) -> None:
    """
    Revokes the refresh token. Idempotent: unknown or already revoked tokens
    are not an error.
    """
    record = _find_refresh_token(session, raw_refresh_token)
    if record is None or record.revoked:
        return
    record.revoked = True
    record.revoked_at = now or utcnow()
    record.reason_revoked = RevocationReason.LOGOUT
    session.flush()
    logger.info("User %s signed out", record.user_id)


def revoke_all_for_user(
        session: Session,
        user_id: int,
        reason: str,
        now: datetime | None = None,
) -> int:
    """Revokes every live refresh token of `user_id`. Returns the count."""
    result = session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now or utcnow(), reason_revoked=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def get_current_user(session: Session, user_id: int) -> dict:
    """
    Returns the profile behind an access token.

    Raises:
      AppError(USER_NOT_FOUND, 404) — user vanished or was deleted after
        the token was issued
    """
    user = credential_store.find_by_id(session, user_id)
    if user is None or user.is_deleted:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} not found.",
            404,
        )
    return {
        **_user_summary(user),
        "roles": credential_store.role_names(user),
        "isEmailConfirmed": user.is_email_confirmed,
        "lastLoginAt": as_utc(user.last_login_at).isoformat() if user.last_login_at else None,
    }
