"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy as a module-level object so it can be imported
anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` from here wherever needed.

Collaborators that are built from configuration once per process (the token
signer, the mail dispatcher, the federation providers) are not extensions in
this sense; the factory stores them in `app.extensions` and routes read them
through the accessors below.
"""

from __future__ import annotations

from flask import current_app
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def get_token_signer():
    """Returns the TokenSigner built at startup."""
    return current_app.extensions["token_signer"]


def get_mail_dispatcher():
    """Returns the MailDispatcher built at startup."""
    return current_app.extensions["mail_dispatcher"]


def get_identity_providers() -> dict:
    """
    Returns {"google": provider | None, "datev": provider | None}.

    A None value means the provider is not enabled or not configured; callers
    must handle that case explicitly.
    """
    return current_app.extensions["identity_providers"]
