"""
federation/providers.py — OAuth 2.0 / OpenID Connect identity providers.

Each provider knows its endpoints, how to turn a userinfo payload into a
ProviderProfile, and how an existing account is matched:

  GoogleProvider  MatchByEmail    Google verifies addresses, so the returned
                                  e-mail identifies the account. Registration
                                  is pre-filled with e-mail and names.
  DatevProvider   MatchBySubject  Only the immutable `sub` identifies the
                                  account. The e-mail is not trusted, so only
                                  names are pre-filled.

HTTP goes through httpx. Transport failures, non-2xx responses and payloads
without the fields we need all become ProviderError (502).

build_providers() returns None for any provider that is disabled or missing
credentials; callers handle the None case explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlencode

import httpx

from clientportal.app.errors import ProviderError

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT         = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT      = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPE                  = "openid email profile"

DEFAULT_TIMEOUT = 15.0


# ── Match kinds ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MatchByEmail:
    pass


@dataclass(frozen=True)
class MatchBySubject:
    pass


MatchKind = MatchByEmail | MatchBySubject


@dataclass(frozen=True)
class ProviderProfile:
    subject: str
    email: str | None
    first_name: str
    last_name: str


class OAuthProvider:
    """Authorization-code flow against one provider. Subclasses parse userinfo."""

    name: str = ""
    match_kind: MatchKind = MatchBySubject()

    def __init__(
            self,
            *,
            client_id: str,
            client_secret: str,
            authorization_endpoint: str,
            token_endpoint: str,
            userinfo_endpoint: str,
            scope: str,
            timeout: float = DEFAULT_TIMEOUT,
            transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client_id              = client_id
        self._client_secret         = client_secret
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint         = token_endpoint
        self.userinfo_endpoint      = userinfo_endpoint
        self.scope                  = scope
        self._timeout               = timeout
        self._transport             = transport

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    def fetch_profile(self, code: str, redirect_uri: str) -> ProviderProfile:
        """
        Exchanges the authorization code and reads the user's profile.

        Raises:
            ProviderError: On transport errors, non-2xx responses or an
                unusable payload.
        """
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                token_response = client.post(
                    self.token_endpoint,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "client_id": self.client_id,
                        "client_secret": self._client_secret,
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = self._extract_access_token(token_response.json())

                userinfo_response = client.get(
                    self.userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.TimeoutException as e:
            logger.warning("%s token/userinfo request timed out", self.name)
            raise ProviderError(self.name, "request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning("%s returned HTTP %s", self.name, e.response.status_code)
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("%s transport error: %s", self.name, type(e).__name__)
            raise ProviderError(self.name, f"transport error: {type(e).__name__}") from e
        except ValueError as e:
            logger.warning("%s returned a non-JSON body", self.name)
            raise ProviderError(self.name, "response is not JSON") from e

        if not isinstance(userinfo, dict):
            raise ProviderError(self.name, "userinfo is not an object")
        return self._parse_profile(userinfo)

    def _extract_access_token(self, data) -> str:
        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise ProviderError(self.name, "token response has no access_token")
        return token

    def _parse_profile(self, data: dict) -> ProviderProfile:
        raise NotImplementedError

    def _subject(self, data: dict) -> str:
        subject = data.get("sub")
        if subject is None or str(subject).strip() == "":
            raise ProviderError(self.name, "userinfo has no subject")
        return str(subject)


class GoogleProvider(OAuthProvider):

    name = "google"
    match_kind = MatchByEmail()

    def __init__(self, *, client_id: str, client_secret: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            authorization_endpoint=GOOGLE_AUTHORIZATION_ENDPOINT,
            token_endpoint=GOOGLE_TOKEN_ENDPOINT,
            userinfo_endpoint=GOOGLE_USERINFO_ENDPOINT,
            scope=GOOGLE_SCOPE,
            timeout=timeout,
            transport=transport,
        )

    def _parse_profile(self, data: dict) -> ProviderProfile:
        email = data.get("email")
        # An address Google has not verified cannot identify an account.
        if not isinstance(email, str) or "@" not in email or data.get("email_verified") is False:
            raise ProviderError(self.name, "userinfo has no verified e-mail")
        return ProviderProfile(
            subject=self._subject(data),
            email=email.strip().lower(),
            first_name=str(data.get("given_name") or ""),
            last_name=str(data.get("family_name") or ""),
        )


class DatevProvider(OAuthProvider):

    name = "datev"
    match_kind = MatchBySubject()

    def _parse_profile(self, data: dict) -> ProviderProfile:
        first_name = data.get("given_name") or ""
        last_name = data.get("family_name") or ""
        if not first_name and not last_name and data.get("name"):
            first_name, _, last_name = str(data["name"]).partition(" ")
        return ProviderProfile(
            subject=self._subject(data),
            email=None,
            first_name=str(first_name),
            last_name=str(last_name),
        )


def build_providers(config: Mapping) -> dict[str, OAuthProvider | None]:
    """
    Returns {"google": GoogleProvider | None, "datev": DatevProvider | None}.

    A provider is built only when its *_ENABLED flag is on and both client
    id and secret are present.
    """
    timeout = float(config.get("OAUTH_HTTP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT))
    providers: dict[str, OAuthProvider | None] = {"google": None, "datev": None}

    if config.get("GOOGLE_OAUTH_ENABLED"):
        client_id = config.get("GOOGLE_OAUTH_CLIENT_ID")
        client_secret = config.get("GOOGLE_OAUTH_CLIENT_SECRET")
        if client_id and client_secret:
            providers["google"] = GoogleProvider(
                client_id=client_id,
                client_secret=client_secret,
                timeout=timeout,
            )
        else:
            logger.warning("Google sign-in is enabled but client id/secret are missing; disabled")

    if config.get("DATEV_OAUTH_ENABLED"):
        client_id = config.get("DATEV_OAUTH_CLIENT_ID")
        client_secret = config.get("DATEV_OAUTH_CLIENT_SECRET")
        if client_id and client_secret:
            providers["datev"] = DatevProvider(
                client_id=client_id,
                client_secret=client_secret,
                authorization_endpoint=config["DATEV_OAUTH_AUTHORIZATION_ENDPOINT"],
                token_endpoint=config["DATEV_OAUTH_TOKEN_ENDPOINT"],
                userinfo_endpoint=config["DATEV_OAUTH_USERINFO_ENDPOINT"],
                scope=config["DATEV_OAUTH_SCOPE"],
                timeout=timeout,
            )
        else:
            logger.warning("DATEV sign-in is enabled but client id/secret are missing; disabled")

    return providers
