"""
federation/broker.py — Turns a provider callback into a sign-in or a registration.

complete_authorization() returns one of two results:

  ExistingUser(user_id, tokens)
      The provider identity belongs to an account. Behaves like a successful
      login (counter cleared, last_login_at stamped, fresh token pair), except
      that the password is not involved. Locked and inactive accounts are
      still refused.
      A Google e-mail match on an unconfirmed account claims that account
      (see _claim_unconfirmed).

  NewUser(provider, prefill, provider_subject_id, link_token)
      Nothing matched. The browser is sent to the registration form with the
      prefill; the signed link_token lets register_user() attach the
      provider identity without trusting anything the browser sends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.federation.providers import MatchByEmail, OAuthProvider, ProviderProfile
from clientportal.app.models.audit_entry import AuditAction
from clientportal.app.models.refresh_token import RevocationReason
from clientportal.app.models.user import User
from clientportal.app.security.token_signer import TokenSigner
from clientportal.app.services import audit_service, credential_store, session_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExistingUser:
    user_id: int
    tokens: dict


@dataclass(frozen=True)
class NewUser:
    provider: str
    provider_subject_id: str
    link_token: str
    prefill: dict = field(default_factory=dict)


BrokerResult = ExistingUser | NewUser


def begin_authorization(provider: OAuthProvider, signer: TokenSigner, redirect_uri: str) -> str:
    """Returns the provider's authorization URL with a signed `state`."""
    return provider.authorization_url(redirect_uri, signer.issue_state_token(provider.name))


def _match(
        session: Session, provider: OAuthProvider, profile: ProviderProfile,
) -> tuple[User | None, bool]:
    """Returns (user, matched_by_email)."""
    user = credential_store.find_by_provider_subject(session, provider.name, profile.subject)
    if user is not None:
        return user, False
    if isinstance(provider.match_kind, MatchByEmail) and profile.email:
        user = credential_store.find_by_email(session, profile.email)
        return user, user is not None
    return None, False


def _claim_unconfirmed(
        session: Session, provider: OAuthProvider, user: User, ip_address: str | None,
) -> None:
    """
    Confirms the address the provider vouched for and drops the password
    along with every refresh token issued before the claim.
    """
    user.is_email_confirmed = True
    user.password_hash = ""
    revoked = session_service.revoke_all_for_user(session, user.id, RevocationReason.ACCOUNT_CLAIMED)
    audit_service.record(
        session,
        AuditAction.ACCOUNT_CLAIMED,
        "User",
        entity_id=user.id,
        actor_user_id=user.id,
        ip_address=ip_address,
        detail=f"{provider.name}; revoked {revoked} refresh token(s)",
    )
    logger.warning(
        "Unconfirmed user %s claimed through %s; password cleared, %s session(s) revoked",
        user.id, provider.name, revoked,
    )


def _prefill(provider: OAuthProvider, profile: ProviderProfile) -> dict:
    prefill = {"firstName": profile.first_name, "lastName": profile.last_name}
    if isinstance(provider.match_kind, MatchByEmail) and profile.email:
        prefill["email"] = profile.email
    return prefill


def complete_authorization(
        session: Session,
        signer: TokenSigner,
        provider: OAuthProvider,
        code: str,
        state: str | None,
        redirect_uri: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_token_days: int = 7,
) -> BrokerResult:
    """
    Raises:
      AppError(INVALID_TOKEN, 400)    — missing, forged or expired `state`
      ProviderError (502)             — provider unreachable or payload unusable
      AppError(ACCOUNT_LOCKED, 401)   — matched account is locked
      AppError(ACCOUNT_INACTIVE, 401) — matched account is inactive
    """
    if not signer.is_valid_state_token(state, provider.name):
        raise AppError(
            ErrorCode.INVALID_TOKEN,
            "The sign-in request has expired. Please start again.",
            400,
            field="state",
        )

    profile = provider.fetch_profile(code, redirect_uri)
    user, by_email = _match(session, provider, profile)

    if user is None:
        logger.info("%s sign-in for an unknown identity; sending to registration", provider.name)
        email = profile.email if isinstance(provider.match_kind, MatchByEmail) else None
        return NewUser(
            provider=provider.name,
            provider_subject_id=profile.subject,
            link_token=signer.issue_link_token(provider.name, profile.subject, email),
            prefill=_prefill(provider, profile),
        )

    if getattr(user, f"{provider.name}_id") is None:
        credential_store.link_provider_subject(user, provider.name, profile.subject)
        audit_service.record(
            session,
            AuditAction.PROVIDER_LINKED,
            "User",
            entity_id=user.id,
            actor_user_id=user.id,
            ip_address=ip_address,
            detail=provider.name,
        )
        logger.info("Linked %s identity to user %s", provider.name, user.id)

    if by_email and not user.is_email_confirmed:
        _claim_unconfirmed(session, provider, user, ip_address)

    tokens = session_service.sign_in_user(
        session,
        signer,
        user,
        ip_address=ip_address,
        user_agent=user_agent,
        refresh_token_days=refresh_token_days,
    )
    logger.info("User %s signed in with %s", user.id, provider.name)
    return ExistingUser(user_id=user.id, tokens=tokens)
