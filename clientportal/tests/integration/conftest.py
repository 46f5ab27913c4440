"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing"), which
    points at in-memory SQLite (or TEST_DATABASE_URL when set).
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.
  - The mail dispatcher runs inline and its mailer records messages instead
    of sending them; tests read tokens out of the recorded bodies.
  - Identity providers are real GoogleProvider / DatevProvider instances
    whose HTTP goes to an httpx.MockTransport.

Helper functions (not fixtures) are provided for common operations:
  - register(client, ...)      → response data dict {message, userId}
  - login(client, ...)         → response data dict with tokens + user
  - auth_headers(token)        → {"Authorization": "Bearer <token>"}
  - token_from(mail)           → raw token embedded in a recorded mail
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from clientportal.app import create_app
from clientportal.app.extensions import db as _db
from clientportal.app.federation.providers import DatevProvider, GoogleProvider
from clientportal.app.services.mail_service import MailDispatcher, Mailer

STRONG_PASSWORD = "Str0ng!Passw0rd"


@dataclass
class SentMail:
    to: str
    subject: str
    body: str


class RecordingMailer(Mailer):
    """Mailer that keeps every message in `outbox` instead of using SMTP."""

    def __init__(self) -> None:
        super().__init__(frontend_url="http://frontend.test")
        self.outbox: list[SentMail] = []

    def _send(self, to_email: str, subject: str, text_body: str) -> bool:
        self.outbox.append(SentMail(to_email, subject, text_body))
        return True


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.
    """
    flask_app = create_app("testing")
    flask_app.config["FRONTEND_URL"] = "http://frontend.test"
    flask_app.config["API_BASE_URL"] = "http://api.test"
    flask_app.extensions["mail_dispatcher"] = MailDispatcher(RecordingMailer())

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows after every test, children before parents.
    """
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        from sqlalchemy import text
        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM audit_entries"))
            conn.execute(text("DELETE FROM email_verification_tokens"))
            conn.execute(text("DELETE FROM password_reset_tokens"))
            conn.execute(text("DELETE FROM refresh_tokens"))
            conn.execute(text("DELETE FROM user_roles"))
            conn.execute(text("DELETE FROM roles"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()

    app.extensions["mail_dispatcher"].mailer.outbox.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Client / collaborator fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


@pytest.fixture
def outbox(app) -> list[SentMail]:
    return app.extensions["mail_dispatcher"].mailer.outbox


@pytest.fixture
def provider_responses() -> dict:
    """
    What the mocked provider endpoints answer. Tests mutate the entries:
      token     — JSON body of the token endpoint
      userinfo  — JSON body of the userinfo endpoint
      status    — HTTP status for both endpoints
    """
    return {
        "token": {"access_token": "provider-access-token", "token_type": "Bearer"},
        "userinfo": {},
        "status": 200,
    }


@pytest.fixture
def identity_providers(app, provider_responses):
    """Installs Google and DATEV providers backed by httpx.MockTransport."""

    def handler(request: httpx.Request) -> httpx.Response:
        status = provider_responses["status"]
        if request.method == "POST":
            return httpx.Response(status, json=provider_responses["token"])
        return httpx.Response(status, json=provider_responses["userinfo"])

    transport = httpx.MockTransport(handler)
    previous = app.extensions["identity_providers"]
    app.extensions["identity_providers"] = {
        "google": GoogleProvider(
            client_id="google-client",
            client_secret="google-secret",
            transport=transport,
        ),
        "datev": DatevProvider(
            client_id="datev-client",
            client_secret="datev-secret",
            authorization_endpoint="https://datev.test/authorize",
            token_endpoint="https://datev.test/token",
            userinfo_endpoint="https://datev.test/userinfo",
            scope="openid profile",
            transport=transport,
        ),
    }
    yield app.extensions["identity_providers"]
    app.extensions["identity_providers"] = previous


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def register(
    client,
    email: str = "alice@example.com",
    password: str = STRONG_PASSWORD,
    first_name: str = "Alice",
    last_name: str = "Example",
    link_token: str | None = None,
) -> dict:
    """
    Registers a new user and returns the response data dict.
    Returns: {"message": "...", "userId": <int>}
    """
    payload = {
        "email": email,
        "password": password,
        "firstName": first_name,
        "lastName": last_name,
    }
    if link_token is not None:
        payload["linkToken"] = link_token
    resp = client.post("/api/v1/auth/register", json=payload)
    assert resp.status_code == 200, f"register failed: {resp.get_json()}"
    return resp.get_json()["data"]


def login(client, email: str = "alice@example.com", password: str = STRONG_PASSWORD) -> dict:
    """
    Logs in a user and returns the response data dict.
    Returns: {"accessToken", "refreshToken", "expiresIn", "tokenType", "user"}
    """
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
    )
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    return resp.get_json()["data"]


def auth_headers(token: str) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token}"}


def token_from(mail: SentMail) -> str:
    """Extracts the raw token from the link in a recorded mail."""
    match = re.search(r"token=([A-Za-z0-9_\-]+)", mail.body)
    assert match is not None, f"no token link in mail: {mail.subject}"
    return match.group(1)


def query_of(location: str) -> dict[str, str]:
    """Single-valued query parameters of a redirect Location."""
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}
