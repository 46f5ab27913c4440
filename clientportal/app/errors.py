"""
errors.py — AppError base class and error code registry.

Every error returned by the client portal auth API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Messages never reveal whether an account exists, how many attempts are
    left, or anything about storage / upstream internals.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


class StorageError(AppError):
    """
    The durable store failed. The original exception is kept on `cause` for
    logging; the client only ever sees the generic message.
    """

    def __init__(self, cause: Exception | None = None) -> None:
        super().__init__(
            ErrorCode.STORAGE_ERROR,
            "An unexpected error occurred. Please try again later.",
            500,
        )
        self.cause = cause


class ProviderError(AppError):
    """An external identity provider failed or returned an unusable payload."""

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(
            ErrorCode.PROVIDER_ERROR,
            "The sign-in provider could not be reached. Please try again later.",
            502,
        )
        self.provider = provider
        self.detail   = detail


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_REQUEST            = "INVALID_REQUEST"        # password policy etc.
    INVALID_TOKEN              = "INVALID_TOKEN"          # reset / verification / link ticket

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    DUPLICATE_EMAIL            = "DUPLICATE_EMAIL"
    PROVIDER_ALREADY_LINKED    = "PROVIDER_ALREADY_LINKED"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    USER_NOT_FOUND             = "USER_NOT_FOUND"
    PROVIDER_NOT_CONFIGURED    = "PROVIDER_NOT_CONFIGURED"

    # ── Auth Errors (401) ──────────────────────────────────────────────────
    # Unknown e-mail and wrong password share INVALID_CREDENTIALS.
    INVALID_CREDENTIALS        = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED             = "ACCOUNT_LOCKED"
    ACCOUNT_INACTIVE           = "ACCOUNT_INACTIVE"
    TOKEN_MISSING              = "TOKEN_MISSING"
    TOKEN_INVALID              = "TOKEN_INVALID"
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"
    REFRESH_TOKEN_INVALID      = "REFRESH_TOKEN_INVALID"
    REFRESH_TOKEN_EXPIRED      = "REFRESH_TOKEN_EXPIRED"
    REFRESH_TOKEN_REVOKED      = "REFRESH_TOKEN_REVOKED"  # possible token theft

    # ── Upstream / System Errors ───────────────────────────────────────────
    PROVIDER_ERROR             = "PROVIDER_ERROR"         # 502
    STORAGE_ERROR              = "STORAGE_ERROR"          # 500
    INTERNAL_ERROR             = "INTERNAL_ERROR"         # 500
