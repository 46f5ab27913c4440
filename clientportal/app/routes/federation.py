"""
routes/federation.py — Browser redirects for Google / DATEV sign-in.

These two endpoints are navigated to by the browser, not called by the SPA,
so every outcome is a 302 to the frontend instead of a JSON envelope:

  GET /<provider>/login
      → provider authorization page
      → {FRONTEND}/auth/register?source=<p>&simulation=true  (provider not configured)

  GET /<provider>/callback?code=&state=
      → {FRONTEND}/auth/oauth-success?accessToken=&refreshToken=     (ExistingUser)
      → {FRONTEND}/auth/register?source=<p>&...prefill&linkToken=    (NewUser)
      → {FRONTEND}/auth/login?error=<code>                           (any failure)

The callback is the one place a route catches AppError: the failure has to
become a redirect with an error code the login page can display.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from flask import Blueprint, current_app, redirect, request

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.extensions import db, get_identity_providers, get_token_signer
from clientportal.app.federation import broker
from clientportal.app.federation.broker import ExistingUser
from clientportal.app.routes.auth import client_ip, user_agent

logger = logging.getLogger(__name__)

federation_bp = Blueprint("federation", __name__)


def _frontend(path: str, **params) -> str:
    base = current_app.config["FRONTEND_URL"].rstrip("/")
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{base}{path}?{query}" if query else f"{base}{path}"


def _callback_uri(provider_name: str) -> str:
    base = current_app.config["API_BASE_URL"].rstrip("/")
    return f"{base}/api/v1/auth/{provider_name}/callback"


def _known_provider(provider_name: str):
    """Returns the provider or None; unknown names are a 404."""
    providers = get_identity_providers()
    if provider_name not in providers:
        raise AppError(
            ErrorCode.PROVIDER_NOT_CONFIGURED,
            f"Unknown sign-in provider '{provider_name}'.",
            404,
        )
    return providers[provider_name]


@federation_bp.route("/<provider_name>/login", methods=["GET"])
def provider_login(provider_name: str):
    """GET /auth/<provider>/login — Start the authorization-code flow."""
    provider = _known_provider(provider_name)
    if provider is None:
        logger.info("%s sign-in requested but not configured; showing simulation page", provider_name)
        return redirect(_frontend("/auth/register", source=provider_name, simulation="true"))

    url = broker.begin_authorization(provider, get_token_signer(), _callback_uri(provider_name))
    return redirect(url)


@federation_bp.route("/<provider_name>/callback", methods=["GET"])
def provider_callback(provider_name: str):
    """GET /auth/<provider>/callback — Finish the flow and send the browser on."""
    provider = _known_provider(provider_name)
    if provider is None:
        return redirect(_frontend("/auth/login", error="provider_not_configured"))

    if request.args.get("error"):
        logger.info("%s sign-in cancelled at the provider: %s", provider_name, request.args["error"])
        return redirect(_frontend("/auth/login", error="provider_denied"))

    code = request.args.get("code")
    if not code:
        return redirect(_frontend("/auth/login", error="invalid_callback"))

    try:
        result = broker.complete_authorization(
            session=db.session,
            signer=get_token_signer(),
            provider=provider,
            code=code,
            state=request.args.get("state"),
            redirect_uri=_callback_uri(provider_name),
            ip_address=client_ip(),
            user_agent=user_agent(),
            refresh_token_days=current_app.config["JWT_REFRESH_TOKEN_EXPIRES_DAYS"],
        )
    except AppError as error:
        db.session.rollback()
        logger.info("%s callback failed: %s", provider_name, error.code)
        return redirect(_frontend("/auth/login", error=error.code.lower()))

    db.session.commit()

    if isinstance(result, ExistingUser):
        return redirect(_frontend(
            "/auth/oauth-success",
            accessToken=result.tokens["accessToken"],
            refreshToken=result.tokens["refreshToken"],
        ))

    return redirect(_frontend(
        "/auth/register",
        source=provider_name,
        linkToken=result.link_token,
        **result.prefill,
    ))
