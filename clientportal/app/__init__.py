"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time. This enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - Alembic to import the metadata without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging (stdlib dictConfig, level from LOG_LEVEL)
  3. Initialise SQLAlchemy via init_app()
  4. Build the per-process collaborators once and store them in
     app.extensions: token signer, mail dispatcher, identity providers.
     A signing-key misconfiguration raises ValueError here, at startup.
  5. Register the auth blueprints under /api/v1/auth
  6. Register global error handlers (AppError → JSON, Exception → 500)

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before db.create_all() or Alembic inspects it.
"""

from __future__ import annotations

import traceback
from logging.config import dictConfig

from flask import Flask, jsonify, request
from marshmallow import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from clientportal.config import config_by_name, validate_production_config


def configure_logging(level: str) -> None:
    """Single stream handler for the whole process, Flask's logger included."""
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "level": level.upper(),
            "handlers": ["console"],
        },
    })


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".

    Raises:
        ValueError: production settings or signing keys are misconfigured.
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)
    app.json.sort_keys = False

    configure_logging(app.config["LOG_LEVEL"])

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from clientportal.app.extensions import db
    db.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # The imports are unused by name; registering the tables is the point.
    with app.app_context():
        from clientportal.app.models import (  # noqa: F401
            audit_entry,
            recovery_token,
            refresh_token,
            role,
            user,
        )

    # ── Collaborators ──────────────────────────────────────────────────────
    _register_collaborators(app)

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _register_collaborators(app: Flask) -> None:
    """
    Builds the token signer, mail dispatcher and identity providers once.
    Routes reach them through the accessors in extensions.py.
    """
    from clientportal.app.federation.providers import build_providers
    from clientportal.app.security.token_signer import TokenSigner
    from clientportal.app.services.mail_service import MailDispatcher

    signer = TokenSigner.from_config(app.config)
    app.extensions["token_signer"] = signer
    app.extensions["mail_dispatcher"] = MailDispatcher.from_config(app.config)
    app.extensions["identity_providers"] = build_providers(app.config)

    enabled = [name for name, p in app.extensions["identity_providers"].items() if p is not None]
    app.logger.info(
        "Token signer ready (%s); identity providers: %s",
        signer.algorithm,
        ", ".join(enabled) or "none",
    )


def _register_blueprints(app: Flask) -> None:
    """
    Registers the route blueprints under /api/v1/auth.

    The url_prefix is set here so route files only specify the path relative
    to it (e.g. "/login" and "/<provider_name>/callback").
    """
    from clientportal.app.routes.auth import auth_bp
    from clientportal.app.routes.federation import federation_bp

    app.register_blueprint(auth_bp,       url_prefix="/api/v1/auth")
    app.register_blueprint(federation_bp, url_prefix="/api/v1/auth")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with its HTTP status.
                        StorageError / ProviderError causes are logged here
                        and never serialised.
      ValidationError → marshmallow schema errors as MISSING_FIELD /
                        INVALID_FIELD (400), first failing field only
      SQLAlchemyError → STORAGE_ERROR (500), e.g. a failing commit in a route
      HTTPException   → Werkzeug's status with the error envelope
      Exception       → INTERNAL_ERROR (500); traceback logged, never returned
    """
    from clientportal.app.errors import AppError, ErrorCode, ProviderError, StorageError
    from clientportal.app.extensions import db

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.
        """
        if isinstance(error, StorageError):
            db.session.rollback()
            app.logger.error(
                "Storage error on %s %s: %r",
                request.method, request.path, error.cause,
            )
        elif isinstance(error, ProviderError):
            app.logger.warning(
                "Identity provider %s failed on %s: %s",
                error.provider, request.path, error.detail,
            )
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Marshmallow keys messages by wire field name. The FIRST error is
        returned ("one error, not many").
        """
        messages = error.messages  # e.g. {"email": ["Not a valid email address."]}

        field = None
        message = "Invalid input."
        code = ErrorCode.INVALID_FIELD

        if isinstance(messages, dict) and messages:
            field_name, field_errors = next(iter(messages.items()))
            field = field_name if field_name != "_schema" else None
            if isinstance(field_errors, list) and field_errors:
                message = str(field_errors[0])
            elif isinstance(field_errors, dict):
                message = "Invalid value."
            else:
                message = str(field_errors)
        elif isinstance(messages, list) and messages:
            message = str(messages[0])

        if message.startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD

        body = {"error": {"code": code, "message": message}}
        if field is not None:
            body["error"]["field"] = field
        return jsonify(body), 400

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(error: SQLAlchemyError):
        db.session.rollback()
        app.logger.error(
            "Storage error on %s %s: %s\n%s",
            request.method, request.path, error, traceback.format_exc(),
        )
        return jsonify(StorageError(error).to_dict()), 500

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({
            "error": {
                "code": (error.name or "HTTP_ERROR").upper().replace(" ", "_"),
                "message": error.description,
            }
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.
        The full traceback goes to the application logger only.
        """
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled when DEBUG or TESTING is true so a frontend served from another
    local port can call the API with Authorization headers.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"

        return response

