"""
tests/integration/test_auth.py — Integration tests for the core auth endpoints.

Endpoints covered:
  POST /auth/register  → 200
  POST /auth/login     → 200
  POST /auth/logout    → 200
  GET  /auth/me        → 200

Error cases:
  DUPLICATE_EMAIL       409 — e-mail already registered (any letter case)
  INVALID_REQUEST       400 — password policy
  MISSING_FIELD         400 — required body field absent
  INVALID_CREDENTIALS   401 — unknown e-mail or wrong password
  ACCOUNT_INACTIVE      401 — deactivated account
  TOKEN_MISSING         401 — no Authorization header
  TOKEN_EXPIRED         401 — access token past exp
  TOKEN_INVALID         401 — malformed or foreign token
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import select

from clientportal.app.extensions import db
from clientportal.app.models.audit_entry import AuditAction, AuditEntry
from clientportal.app.models.user import User

from .conftest import STRONG_PASSWORD, auth_headers, login, register, token_from


# ═══════════════════════════════════════════════════════════════════════════
# POST /auth/register
# ═══════════════════════════════════════════════════════════════════════════

class TestRegister:

    def test_register_success_returns_message_and_user_id(self, client):
        data = register(client)
        assert isinstance(data["userId"], int)
        assert data["userId"] > 0
        assert "confirm" in data["message"]

    def test_register_sends_verification_mail(self, client, outbox):
        register(client, email="alice@example.com")
        assert len(outbox) == 1
        assert outbox[0].to == "alice@example.com"
        assert "/auth/verify-email?token=" in outbox[0].body
        assert token_from(outbox[0])

    def test_register_stores_email_lower_cased(self, client, app):
        data = register(client, email="  Alice@Example.COM ")
        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.email == "alice@example.com"
            assert user.is_email_confirmed is False

    def test_register_never_stores_plaintext_password(self, client, app):
        data = register(client)
        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.password_hash
            assert STRONG_PASSWORD not in user.password_hash

    def test_duplicate_email_in_other_case_returns_409(self, client):
        register(client, email="a@b.com")
        resp = client.post("/api/v1/auth/register", json={
            "email": "A@B.com",
            "password": STRONG_PASSWORD,
            "firstName": "Other",
            "lastName": "Person",
        })
        assert resp.status_code == 409
        error = resp.get_json()["error"]
        assert error["code"] == "DUPLICATE_EMAIL"
        assert error["field"] == "email"

    def test_weak_password_returns_invalid_request_listing_all_rules(self, client):
        resp = client.post("/api/v1/auth/register", json={
            "email": "weak@example.com",
            "password": "short",
            "firstName": "Weak",
            "lastName": "Password",
        })
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "INVALID_REQUEST"
        assert error["field"] == "password"
        assert "12 characters" in error["message"]
        assert "uppercase" in error["message"]
        assert "special character" in error["message"]

    def test_missing_first_name_returns_missing_field(self, client):
        resp = client.post("/api/v1/auth/register", json={
            "email": "nofirst@example.com",
            "password": STRONG_PASSWORD,
            "lastName": "Only",
        })
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "MISSING_FIELD"
        assert error["field"] == "firstName"

    def test_invalid_email_returns_invalid_field(self, client):
        resp = client.post("/api/v1/auth/register", json={
            "email": "not-an-email",
            "password": STRONG_PASSWORD,
            "firstName": "Bad",
            "lastName": "Email",
        })
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "INVALID_FIELD"
        assert error["field"] == "email"

    def test_names_are_sanitised(self, client, app):
        data = register(client, first_name="<b>Anne</b>", last_name="O'Brien-Smith 3rd")
        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.first_name == "bAnneb"
            assert user.last_name == "O'Brien-Smith rd"

    def test_register_assigns_registered_user_role_and_audits(self, client, app):
        data = register(client)
        tokens = login(client)
        assert tokens["user"]["role"] == "RegisteredUser"
        with app.app_context():
            entries = db.session.execute(
                select(AuditEntry).where(AuditEntry.action == AuditAction.USER_REGISTERED)
            ).scalars().all()
            assert [e.entity_id for e in entries] == [data["userId"]]


# ═══════════════════════════════════════════════════════════════════════════
# POST /auth/login
# ═══════════════════════════════════════════════════════════════════════════

class TestLogin:

    def test_login_success_returns_token_pair_and_user(self, client):
        data = register(client)
        tokens = login(client)
        assert tokens["tokenType"] == "Bearer"
        assert tokens["expiresIn"] == 300
        assert tokens["accessToken"]
        assert tokens["refreshToken"]
        assert tokens["user"] == {
            "id": data["userId"],
            "email": "alice@example.com",
            "firstName": "Alice",
            "lastName": "Example",
            "role": "RegisteredUser",
        }

    def test_login_email_is_case_insensitive(self, client):
        register(client, email="alice@example.com")
        tokens = login(client, email="  ALICE@Example.com ")
        assert tokens["user"]["email"] == "alice@example.com"

    def test_wrong_password_returns_invalid_credentials(self, client):
        register(client)
        resp = client.post("/api/v1/auth/login", json={
            "email": "alice@example.com", "password": "Wr0ng!Password",
        })
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_unknown_email_is_indistinguishable_from_wrong_password(self, client):
        register(client)
        wrong_password = client.post("/api/v1/auth/login", json={
            "email": "alice@example.com", "password": "Wr0ng!Password",
        })
        unknown_email = client.post("/api/v1/auth/login", json={
            "email": "nobody@example.com", "password": "Wr0ng!Password",
        })
        assert unknown_email.status_code == wrong_password.status_code == 401
        assert unknown_email.get_json() == wrong_password.get_json()

    def test_unencodable_password_is_indistinguishable_across_accounts(self, client):
        register(client)

        def attempt(email: str):
            # "\ud800" stays escaped on the wire: a lone surrogate, valid JSON.
            body = '{"email": "%s", "password": "Str0ng!Pass\\ud800w0rd"}' % email
            return client.post("/api/v1/auth/login", data=body, content_type="application/json")

        existing = attempt("alice@example.com")
        unknown = attempt("nobody@example.com")

        assert existing.status_code == unknown.status_code == 401
        assert existing.get_json() == unknown.get_json()
        assert unknown.get_json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_inactive_account_rejected_even_with_correct_password(self, client, app):
        data = register(client)
        with app.app_context():
            db.session.get(User, data["userId"]).is_active = False
            db.session.commit()

        resp = client.post("/api/v1/auth/login", json={
            "email": "alice@example.com", "password": STRONG_PASSWORD,
        })
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "ACCOUNT_INACTIVE"

    def test_soft_deleted_account_is_inactive(self, client, app):
        data = register(client)
        with app.app_context():
            db.session.get(User, data["userId"]).is_deleted = True
            db.session.commit()

        resp = client.post("/api/v1/auth/login", json={
            "email": "alice@example.com", "password": STRONG_PASSWORD,
        })
        assert resp.get_json()["error"]["code"] == "ACCOUNT_INACTIVE"

    def test_login_stamps_last_login(self, client, app):
        data = register(client)
        login(client)
        with app.app_context():
            assert db.session.get(User, data["userId"]).last_login_at is not None

    def test_missing_password_returns_missing_field(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com"})
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "MISSING_FIELD"
        assert error["field"] == "password"


# ═══════════════════════════════════════════════════════════════════════════
# GET /auth/me
# ═══════════════════════════════════════════════════════════════════════════

class TestMe:

    def test_me_returns_profile(self, client):
        data = register(client)
        tokens = login(client)
        resp = client.get("/api/v1/auth/me", headers=auth_headers(tokens["accessToken"]))
        assert resp.status_code == 200
        me = resp.get_json()["data"]
        assert me["id"] == data["userId"]
        assert me["email"] == "alice@example.com"
        assert me["role"] == "RegisteredUser"
        assert me["roles"] == ["RegisteredUser"]
        assert me["isEmailConfirmed"] is False
        assert me["lastLoginAt"] is not None

    def test_me_without_header_returns_token_missing(self, client):
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "TOKEN_MISSING"

    def test_me_with_malformed_header_returns_token_invalid(self, client):
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Token abc"})
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "TOKEN_INVALID"

    def test_me_with_garbage_token_returns_token_invalid(self, client):
        resp = client.get("/api/v1/auth/me", headers=auth_headers("not.a.jwt"))
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "TOKEN_INVALID"

    def test_me_with_expired_token_returns_token_expired(self, client, app):
        data = register(client)
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        token = jwt.encode(
            {
                "iss": app.config["JWT_ISSUER"],
                "aud": app.config["JWT_AUDIENCE"],
                "sub": str(data["userId"]),
                "typ": "access",
                "iat": past,
                "exp": past + timedelta(minutes=5),
            },
            app.config["JWT_SECRET_KEY"],
            algorithm="HS256",
        )
        resp = client.get("/api/v1/auth/me", headers=auth_headers(token))
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "TOKEN_EXPIRED"

    def test_me_with_token_signed_by_other_secret_returns_token_invalid(self, client, app):
        data = register(client)
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "iss": app.config["JWT_ISSUER"],
                "aud": app.config["JWT_AUDIENCE"],
                "sub": str(data["userId"]),
                "typ": "access",
                "iat": now,
                "exp": now + timedelta(minutes=5),
            },
            "a-completely-different-secret-of-decent-length",
            algorithm="HS256",
        )
        resp = client.get("/api/v1/auth/me", headers=auth_headers(token))
        assert resp.get_json()["error"]["code"] == "TOKEN_INVALID"

    def test_refresh_token_is_not_accepted_as_bearer(self, client):
        register(client)
        tokens = login(client)
        resp = client.get("/api/v1/auth/me", headers=auth_headers(tokens["refreshToken"]))
        assert resp.get_json()["error"]["code"] == "TOKEN_INVALID"


# ═══════════════════════════════════════════════════════════════════════════
# POST /auth/logout
# ═══════════════════════════════════════════════════════════════════════════

class TestLogout:

    def test_logout_twice_returns_same_success(self, client):
        register(client)
        tokens = login(client)
        body = {"refreshToken": tokens["refreshToken"]}

        first = client.post("/api/v1/auth/logout", json=body)
        second = client.post("/api/v1/auth/logout", json=body)

        assert first.status_code == second.status_code == 200
        assert first.get_json() == second.get_json()

    def test_logout_unknown_token_is_not_an_error(self, client):
        resp = client.post("/api/v1/auth/logout", json={"refreshToken": "never-issued"})
        assert resp.status_code == 200

    def test_refresh_after_logout_is_revoked(self, client):
        register(client)
        tokens = login(client)
        client.post("/api/v1/auth/logout", json={"refreshToken": tokens["refreshToken"]})

        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "REFRESH_TOKEN_REVOKED"
