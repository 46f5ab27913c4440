"""
services/registration_service.py — Self-service account creation.

Flow:
  1. Normalise the e-mail (trim + lower-case) and reject duplicates.
  2. Enforce the password policy and hash the password.
  3. Sanitise names down to letters, whitespace, "-", "'" and ".".
  4. Create the user with the RegisteredUser role.
  5. If a link ticket from a provider callback is present, store the provider
     subject id. When the ticket's e-mail equals the registered one, the
     address is already proven and is confirmed immediately.
  6. Otherwise issue a 24-hour verification token and mail it.

Duplicate e-mails are caught twice: by a lookup for the friendly error, and
by the UNIQUE constraint for the race between two simultaneous requests.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.models.audit_entry import AuditAction
from clientportal.app.models.user import User
from clientportal.app.security.password_hasher import hash_password
from clientportal.app.security.password_policy import enforce_password_policy
from clientportal.app.security.token_signer import TokenSigner
from clientportal.app.services import audit_service, credential_store, recovery_service
from clientportal.app.services.mail_service import MailBatch, MailDispatcher, redact_email

logger = logging.getLogger(__name__)


def sanitize_name(value: str | None) -> str:
    if not value:
        return ""
    kept = "".join(c for c in value if c.isalpha() or c.isspace() or c in "-'.")
    return " ".join(kept.split())


def _duplicate_email() -> AppError:
    return AppError(
        ErrorCode.DUPLICATE_EMAIL,
        "An account with this e-mail address already exists.",
        409,
        field="email",
    )


def register_user(
        session: Session,
        dispatcher: MailDispatcher | MailBatch,
        signer: TokenSigner,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        link_token: str | None = None,
        ip_address: str | None = None,
        bcrypt_rounds: int = 12,
) -> dict:
    """
    Creates an account.

    Raises:
      AppError(DUPLICATE_EMAIL, 409)         — e-mail registered in any letter case
      AppError(INVALID_REQUEST, 400)         — password policy violated
      AppError(INVALID_TOKEN, 400)           — link ticket invalid or expired
      AppError(PROVIDER_ALREADY_LINKED, 409) — provider identity belongs to another user

    Returns: {"message": "...", "userId": <int>}
    """
    email = credential_store.normalize_email(email)
    if credential_store.email_exists(session, email):
        logger.info("Registration refused: %s already registered", redact_email(email))
        raise _duplicate_email()

    enforce_password_policy(password)

    link = signer.validate_link_token(link_token) if link_token else None
    if link is not None and credential_store.find_by_provider_subject(
            session, link.provider, link.subject) is not None:
        raise AppError(
            ErrorCode.PROVIDER_ALREADY_LINKED,
            "This sign-in provider account is already linked to another user.",
            409,
            field="linkToken",
        )

    user = User(
        email=email,
        password_hash=hash_password(password, rounds=bcrypt_rounds),
        first_name=sanitize_name(first_name),
        last_name=sanitize_name(last_name),
        is_active=True,
        is_deleted=False,
        is_email_confirmed=False,
        failed_login_attempts=0,
    )
    if link is not None:
        credential_store.link_provider_subject(user, link.provider, link.subject)
        if link.email and credential_store.normalize_email(link.email) == email:
            user.is_email_confirmed = True

    session.add(user)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.info("Registration lost a race for %s", redact_email(email))
        raise _duplicate_email()

    credential_store.assign_role(session, user, credential_store.DEFAULT_ROLE)
    audit_service.record(
        session,
        AuditAction.USER_REGISTERED,
        "User",
        entity_id=user.id,
        actor_user_id=user.id,
        ip_address=ip_address,
        detail=f"linked {link.provider}" if link is not None else None,
    )

    if user.is_email_confirmed:
        message = "Registration successful. You can sign in now."
    else:
        raw = recovery_service.issue_email_verification(session, user.id)
        dispatcher.email_verification(user.email, user.first_name, raw)
        message = "Registration successful. Please confirm your e-mail address."

    logger.info("User %s registered (%s)", user.id, redact_email(email))
    return {"message": message, "userId": user.id}
