"""
middleware/auth_middleware.py — Bearer access-token authentication decorator.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Validates the token with the application's TokenSigner (signature,
     algorithm, issuer, audience, expiry; zero leeway)
  3. Attaches user_id (int) and the full AccessClaims to flask.g
  4. Raises the appropriate 401 AppError if any step fails

Strict responsibility boundary:
  - Authentication only. It does not look the user up; services receive
    user_id as a plain integer argument, with no knowledge of JWT or headers.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — malformed header, bad signature or claims
  TOKEN_EXPIRED  (401) — valid token whose exp has passed
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import g, request

from clientportal.app.errors import AppError, ErrorCode
from clientportal.app.extensions import get_token_signer


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces bearer authentication.

    Usage:
        @auth_bp.route("/me")
        @require_auth
        def me():
            user_id = g.user_id  # always an int when this runs
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _authenticate_request() -> None:
    """
    Performs the full authentication sequence and sets flask.g.user_id and
    flask.g.claims. Raises AppError on any failure.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )

    claims = get_token_signer().validate_access_token(parts[1])

    g.user_id = claims.user_id
    g.claims = claims
