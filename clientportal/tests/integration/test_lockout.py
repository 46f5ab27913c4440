"""
tests/integration/test_lockout.py — Failed-login counter and account lock.

Rules under test:
  - 5 consecutive wrong passwords lock the account for 30 minutes
  - while locked, even the correct password fails with ACCOUNT_LOCKED and
    the counter is not touched
  - once locked_until is in the past, login works again
  - any successful login resets the counter to 0
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from clientportal.app.extensions import db
from clientportal.app.models.audit_entry import AuditAction, AuditEntry
from clientportal.app.models.user import User
from clientportal.app.timeutils import as_utc

from .conftest import STRONG_PASSWORD, login, register

WRONG_PASSWORD = "Wr0ng!Password"


def _attempt(client, password: str):
    return client.post("/api/v1/auth/login", json={
        "email": "alice@example.com", "password": password,
    })


def _fail(client, times: int) -> None:
    for _ in range(times):
        resp = _attempt(client, WRONG_PASSWORD)
        assert resp.get_json()["error"]["code"] == "INVALID_CREDENTIALS"


def _audit_count(action: str) -> int:
    return db.session.execute(
        select(func.count(AuditEntry.id)).where(AuditEntry.action == action)
    ).scalar_one()


class TestLockout:

    def test_failed_attempts_are_counted(self, client, app):
        data = register(client)
        _fail(client, 3)
        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.failed_login_attempts == 3
            assert user.locked_until is None

    def test_fifth_failure_locks_and_correct_password_then_fails(self, client, app):
        data = register(client)
        _fail(client, 4)

        fifth = _attempt(client, WRONG_PASSWORD)
        assert fifth.status_code == 401
        assert fifth.get_json()["error"]["code"] == "INVALID_CREDENTIALS"

        sixth = _attempt(client, STRONG_PASSWORD)
        assert sixth.status_code == 401
        assert sixth.get_json()["error"]["code"] == "ACCOUNT_LOCKED"

        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.failed_login_attempts == 5
            remaining = as_utc(user.locked_until) - datetime.now(timezone.utc)
            assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)

    def test_attempts_while_locked_do_not_change_counter(self, client, app):
        data = register(client)
        _fail(client, 5)

        for _ in range(3):
            assert _attempt(client, WRONG_PASSWORD).get_json()["error"]["code"] == "ACCOUNT_LOCKED"

        with app.app_context():
            assert db.session.get(User, data["userId"]).failed_login_attempts == 5

    def test_login_succeeds_after_lock_expires_and_resets_counter(self, client, app):
        data = register(client)
        _fail(client, 5)
        with app.app_context():
            user = db.session.get(User, data["userId"])
            user.locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
            db.session.commit()

        tokens = login(client)
        assert tokens["accessToken"]

        with app.app_context():
            user = db.session.get(User, data["userId"])
            assert user.failed_login_attempts == 0
            assert user.locked_until is None

    def test_success_resets_counter(self, client, app):
        data = register(client)
        _fail(client, 4)
        login(client)
        with app.app_context():
            assert db.session.get(User, data["userId"]).failed_login_attempts == 0

        # Counter starts from zero again: four more failures do not lock.
        _fail(client, 4)
        assert _attempt(client, STRONG_PASSWORD).status_code == 200

    def test_failures_and_lock_are_audited(self, client, app):
        register(client)
        _fail(client, 5)
        with app.app_context():
            assert _audit_count(AuditAction.LOGIN_FAILED) == 5
            assert _audit_count(AuditAction.ACCOUNT_LOCKED) == 1

    def test_unknown_email_failure_is_audited_without_actor(self, client, app):
        client.post("/api/v1/auth/login", json={
            "email": "ghost@example.com", "password": WRONG_PASSWORD,
        })
        with app.app_context():
            entry = db.session.execute(select(AuditEntry)).scalar_one()
            assert entry.action == AuditAction.LOGIN_FAILED
            assert entry.actor_user_id is None
            assert "ghost@example.com" not in (entry.detail or "")
