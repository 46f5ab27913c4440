"""
routes/auth.py — Authentication route handlers.

Layer rules:
  - Parse request body
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE service function
  - Commit the DB session
  - Return the standard response envelope: {"data": {...}, "warnings": []}

No business logic here. No DB queries. AppError propagates to the global
error handler in app/__init__.py; routes never catch it.

Endpoints (url_prefix=/api/v1/auth):
  POST   /register             → 200
  POST   /login                → 200
  POST   /refresh              → 200
  POST   /logout               → 200 (idempotent)
  GET    /me                   → 200 (Bearer)
  POST   /forgot-password      → 200 (constant body)
  POST   /reset-password       → 200
  POST   /verify-email         → 200
  POST   /resend-verification  → 200 (constant body)
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from clientportal.app.extensions import db, get_mail_dispatcher, get_token_signer
from clientportal.app.middleware.auth_middleware import require_auth
from clientportal.app.schemas.auth_schema import (
    EmailOnlySchema,
    LoginSchema,
    RefreshTokenSchema,
    RegisterSchema,
    ResetPasswordSchema,
    VerifyEmailSchema,
)
from clientportal.app.services import recovery_service, registration_service, session_service
from clientportal.app.services.mail_service import MailBatch

auth_bp = Blueprint("auth", __name__)


def client_ip() -> str | None:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64] or None
    return request.remote_addr


def user_agent() -> str | None:
    return request.headers.get("User-Agent")


def _json_body() -> dict:
    return request.get_json(force=True, silent=True) or {}


@auth_bp.route("/register", methods=["POST"])
def register():
    """POST /auth/register — Create an account. (No auth required.)"""
    data = RegisterSchema().load(_json_body())
    mail = MailBatch(get_mail_dispatcher())
    result = registration_service.register_user(
        session=db.session,
        dispatcher=mail,
        signer=get_token_signer(),
        email=data["email"],
        password=data["password"],
        first_name=data["first_name"],
        last_name=data["last_name"],
        link_token=data["link_token"],
        ip_address=client_ip(),
        bcrypt_rounds=current_app.config["BCRYPT_LOG_ROUNDS"],
    )
    db.session.commit()
    mail.release()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/login", methods=["POST"])
def login():
    """POST /auth/login — Authenticate; return an access + refresh pair."""
    data = LoginSchema().load(_json_body())
    result = session_service.login(
        session=db.session,
        signer=get_token_signer(),
        email=data["email"],
        password=data["password"],
        ip_address=client_ip(),
        user_agent=user_agent(),
        refresh_token_days=current_app.config["JWT_REFRESH_TOKEN_EXPIRES_DAYS"],
        bcrypt_rounds=current_app.config["BCRYPT_LOG_ROUNDS"],
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    """POST /auth/refresh — Rotate a refresh token into a new pair."""
    data = RefreshTokenSchema().load(_json_body())
    result = session_service.refresh(
        session=db.session,
        signer=get_token_signer(),
        raw_refresh_token=data["refresh_token"],
        ip_address=client_ip(),
        user_agent=user_agent(),
        refresh_token_days=current_app.config["JWT_REFRESH_TOKEN_EXPIRES_DAYS"],
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/logout", methods=["POST"])
def logout():
    """POST /auth/logout — Revoke a refresh token. Always succeeds."""
    data = RefreshTokenSchema().load(_json_body())
    session_service.logout(
        session=db.session,
        raw_refresh_token=data["refresh_token"],
    )
    db.session.commit()
    return jsonify({"data": {"message": "Logged out successfully."}, "warnings": []}), 200


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    """GET /auth/me — Current user profile. (Auth required.)"""
    result = session_service.get_current_user(
        session=db.session,
        user_id=g.user_id,
    )
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    """POST /auth/forgot-password — Same response whether or not the account exists."""
    data = EmailOnlySchema().load(_json_body())
    mail = MailBatch(get_mail_dispatcher())
    result = recovery_service.request_reset(
        session=db.session,
        dispatcher=mail,
        email=data["email"],
        ip_address=client_ip(),
    )
    db.session.commit()
    mail.release()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/reset-password", methods=["POST"])
def reset_password():
    """POST /auth/reset-password — Consume a reset token and set a new password."""
    data = ResetPasswordSchema().load(_json_body())
    result = recovery_service.reset_password(
        session=db.session,
        raw_token=data["token"],
        new_password=data["new_password"],
        ip_address=client_ip(),
        bcrypt_rounds=current_app.config["BCRYPT_LOG_ROUNDS"],
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/verify-email", methods=["POST"])
def verify_email():
    """POST /auth/verify-email — Consume a verification token."""
    data = VerifyEmailSchema().load(_json_body())
    mail = MailBatch(get_mail_dispatcher())
    result = recovery_service.verify_email(
        session=db.session,
        dispatcher=mail,
        raw_token=data["token"],
        ip_address=client_ip(),
    )
    db.session.commit()
    mail.release()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/resend-verification", methods=["POST"])
def resend_verification():
    """POST /auth/resend-verification — Same response whether or not the account exists."""
    data = EmailOnlySchema().load(_json_body())
    mail = MailBatch(get_mail_dispatcher())
    result = recovery_service.resend_verification(
        session=db.session,
        dispatcher=mail,
        email=data["email"],
    )
    db.session.commit()
    mail.release()
    return jsonify({"data": result, "warnings": []}), 200
