"""
security/token_signer.py — Access-token issuing and validation (PyJWT).

The signing mode is a boot-time decision. create_app() builds exactly one
TokenSigner from configuration and every request uses that instance; no
handler branches on the mode.

  Symmetric   HS256, one shared secret signs and verifies.
  Asymmetric  RS256, private key signs, public key verifies. Selected as soon
              as either PEM is configured, and then both are required.

Token kinds, told apart by the `typ` claim:
  access  5-minute bearer token (configurable) carrying identity and roles
  link    15-minute ticket carrying a provider identity from an OAuth
          callback to the registration form
  state   10-minute OAuth `state` parameter

Refresh tokens are not JWTs: they are opaque random strings, looked up by
their SHA-256 digest in the refresh_tokens table.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from clientportal.app.errors import AppError, ErrorCode

ACCESS_TOKEN_TYPE = "access"
LINK_TOKEN_TYPE   = "link"
STATE_TOKEN_TYPE  = "state"

LINK_TOKEN_TTL  = timedelta(minutes=15)
STATE_TOKEN_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    email: str
    name: str
    given_name: str
    family_name: str
    roles: list[str]
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class LinkClaims:
    provider: str
    subject: str
    email: str | None


class TokenSigner:

    def __init__(
            self,
            *,
            issuer: str,
            audience: str,
            algorithm: str,
            signing_key,
            verification_key,
            access_token_minutes: int = 5,
    ) -> None:
        self.issuer               = issuer
        self.audience             = audience
        self.algorithm            = algorithm
        self._signing_key         = signing_key
        self._verification_key    = verification_key
        self.access_token_minutes = access_token_minutes

    # ── Construction ──────────────────────────────────────────────────────

    @classmethod
    def symmetric(cls, secret: str, *, issuer: str, audience: str,
                  access_token_minutes: int = 5) -> "TokenSigner":
        if not secret:
            raise ValueError("JWT_SECRET_KEY is required in symmetric signing mode.")
        return cls(
            issuer=issuer,
            audience=audience,
            algorithm="HS256",
            signing_key=secret,
            verification_key=secret,
            access_token_minutes=access_token_minutes,
        )

    @classmethod
    def asymmetric(cls, private_key_pem: str | None, public_key_pem: str | None, *,
                   issuer: str, audience: str,
                   access_token_minutes: int = 5) -> "TokenSigner":
        """
        Raises ValueError unless both PEMs are present, parse as RSA keys, and
        belong to the same key pair.
        """
        if not private_key_pem:
            raise ValueError(
                "JWT_PUBLIC_KEY is configured without JWT_PRIVATE_KEY. "
                "Asymmetric signing needs both keys."
            )
        if not public_key_pem:
            raise ValueError(
                "JWT_PRIVATE_KEY is configured without JWT_PUBLIC_KEY. "
                "Asymmetric signing needs both keys."
            )

        private_key = serialization.load_pem_private_key(
            private_key_pem.encode("utf-8"), password=None,
        )
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        if not isinstance(private_key, RSAPrivateKey) or not isinstance(public_key, RSAPublicKey):
            raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be RSA keys.")
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise ValueError("JWT_PUBLIC_KEY does not match JWT_PRIVATE_KEY.")

        return cls(
            issuer=issuer,
            audience=audience,
            algorithm="RS256",
            signing_key=private_key,
            verification_key=public_key,
            access_token_minutes=access_token_minutes,
        )

    @classmethod
    def from_config(cls, config: Mapping) -> "TokenSigner":
        """Builds the signer for the configured mode. Misconfiguration raises ValueError."""
        common = {
            "issuer": config["JWT_ISSUER"],
            "audience": config["JWT_AUDIENCE"],
            "access_token_minutes": int(config.get("JWT_ACCESS_TOKEN_EXPIRES_MINUTES", 5)),
        }
        private_pem = config.get("JWT_PRIVATE_KEY")
        public_pem = config.get("JWT_PUBLIC_KEY")
        if private_pem or public_pem:
            return cls.asymmetric(private_pem, public_pem, **common)
        return cls.symmetric(config.get("JWT_SECRET_KEY", ""), **common)

    # ── Access tokens ─────────────────────────────────────────────────────

    def issue_access_token(
            self,
            user_id: int,
            email: str,
            first_name: str,
            last_name: str,
            roles: list[str],
    ) -> tuple[str, int]:
        """Returns (token, expires_in_seconds)."""
        now = datetime.now(timezone.utc)
        lifetime = timedelta(minutes=self.access_token_minutes)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(user_id),
            "email": email,
            "name": f"{first_name} {last_name}".strip(),
            "given_name": first_name,
            "family_name": last_name,
            "roles": list(roles),
            "typ": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + lifetime,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(payload, self._signing_key, algorithm=self.algorithm)
        return token, int(lifetime.total_seconds())

    def validate_access_token(self, token: str) -> AccessClaims:
        """
        Verifies signature, algorithm, issuer, audience and expiry with zero
        clock-skew tolerance.

        Raises:
          AppError(TOKEN_EXPIRED, 401) — signature fine, exp has passed
          AppError(TOKEN_INVALID, 401) — anything else
        """
        try:
            payload = self._decode(token, ACCESS_TOKEN_TYPE)
        except jwt.ExpiredSignatureError:
            raise AppError(
                ErrorCode.TOKEN_EXPIRED,
                "The access token has expired. Use POST /auth/refresh to obtain a new one.",
                401,
            )
        except jwt.InvalidTokenError:
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "The access token is invalid or has been tampered with.",
                401,
            )

        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "The 'sub' claim in the access token is not a valid user ID.",
                401,
            )

        roles = payload.get("roles") or []
        return AccessClaims(
            user_id=user_id,
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            given_name=payload.get("given_name", ""),
            family_name=payload.get("family_name", ""),
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
            jti=payload.get("jti", ""),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    # ── Refresh tokens ────────────────────────────────────────────────────

    @staticmethod
    def issue_refresh_token() -> str:
        """Opaque, URL-safe, 384 bits from the OS CSPRNG. Carries no user data."""
        return secrets.token_urlsafe(48)

    # ── Federation tickets ────────────────────────────────────────────────

    def issue_link_token(self, provider: str, subject: str, email: str | None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "provider": provider,
            "email": email,
            "typ": LINK_TOKEN_TYPE,
            "iat": now,
            "exp": now + LINK_TOKEN_TTL,
        }
        return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)

    def validate_link_token(self, token: str) -> LinkClaims:
        """Raises AppError(INVALID_TOKEN, 400) for any invalid or expired ticket."""
        try:
            payload = self._decode(token, LINK_TOKEN_TYPE)
        except jwt.InvalidTokenError:
            raise AppError(
                ErrorCode.INVALID_TOKEN,
                "The sign-in link has expired. Please sign in with the provider again.",
                400,
                field="linkToken",
            )
        return LinkClaims(
            provider=payload.get("provider", ""),
            subject=payload["sub"],
            email=payload.get("email"),
        )

    def issue_state_token(self, provider: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": provider,
            "typ": STATE_TOKEN_TYPE,
            "nonce": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + STATE_TOKEN_TTL,
        }
        return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)

    def is_valid_state_token(self, token: str | None, provider: str) -> bool:
        if not token:
            return False
        try:
            payload = self._decode(token, STATE_TOKEN_TYPE)
        except jwt.InvalidTokenError:
            return False
        return payload.get("sub") == provider

    # ── Internals ─────────────────────────────────────────────────────────

    def _decode(self, token: str, expected_type: str) -> dict:
        payload = jwt.decode(
            token,
            self._verification_key,
            algorithms=[self.algorithm],
            audience=self.audience,
            issuer=self.issuer,
            leeway=0,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
        if payload.get("typ") != expected_type:
            raise jwt.InvalidTokenError(f"expected a {expected_type} token")
        return payload
