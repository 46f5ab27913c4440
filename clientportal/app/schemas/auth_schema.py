"""
schemas/auth_schema.py — Marshmallow schemas for the /auth endpoints.

Validation responsibility:
  - This file: presence, types, lengths, e-mail format. Wire names are
    camelCase (data_key); loaded dicts use snake_case.
  - security/password_policy.py: password strength (INVALID_REQUEST, 400),
    applied by the services so every violated rule is reported at once.
  - services: duplicate e-mail and token checks (need a DB lookup).

IMPORTANT: All schemas inherit from marshmallow.Schema directly, so they can
           be unit-tested without a Flask app context.
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, pre_load, validate, validates


class _TrimmedEmailSchema(Schema):
    """Strips surrounding whitespace from `email` before validation."""

    @pre_load
    def strip_email(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get("email"), str):
            data = {**data, "email": data["email"].strip()}
        return data


class RegisterSchema(_TrimmedEmailSchema):
    """
    POST /auth/register

      email      : valid address, at most 255 characters
      password   : checked against the password policy by the service
      firstName  : 1–100 characters
      lastName   : 1–100 characters
      linkToken  : optional ticket issued by a provider callback
    """

    email = fields.Email(required=True, validate=validate.Length(max=255))
    password = fields.Str(required=True, load_only=True)
    first_name = fields.Str(required=True, data_key="firstName", validate=validate.Length(min=1, max=100))
    last_name = fields.Str(required=True, data_key="lastName", validate=validate.Length(min=1, max=100))
    link_token = fields.Str(load_default=None, allow_none=True, data_key="linkToken")

    @validates("first_name")
    def validate_first_name(self, value: str, **kwargs) -> None:
        if not value.strip():
            raise ValidationError("First name must not be blank.")

    @validates("last_name")
    def validate_last_name(self, value: str, **kwargs) -> None:
        if not value.strip():
            raise ValidationError("Last name must not be blank.")


class LoginSchema(_TrimmedEmailSchema):
    """
    POST /auth/login

    The e-mail is not format-checked here: a malformed address simply does
    not match an account and yields INVALID_CREDENTIALS like any other miss.
    """

    email = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    password = fields.Str(required=True, load_only=True, validate=validate.Length(min=1, max=1024))


class RefreshTokenSchema(Schema):
    """POST /auth/refresh and POST /auth/logout"""

    refresh_token = fields.Str(required=True, data_key="refreshToken", validate=validate.Length(min=1))


class EmailOnlySchema(_TrimmedEmailSchema):
    """POST /auth/forgot-password and POST /auth/resend-verification"""

    email = fields.Email(required=True, validate=validate.Length(max=255))


class ResetPasswordSchema(Schema):
    """POST /auth/reset-password"""

    token = fields.Str(required=True, validate=validate.Length(min=1))
    new_password = fields.Str(
        required=True,
        load_only=True,
        data_key="newPassword",
    )


class VerifyEmailSchema(Schema):
    """POST /auth/verify-email"""

    token = fields.Str(required=True, validate=validate.Length(min=1))
