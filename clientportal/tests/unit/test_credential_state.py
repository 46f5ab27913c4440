"""
tests/unit/test_credential_state.py — User.credential_state() derivation.

Models are plain objects here; nothing is flushed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from clientportal.app.models.user import Active, Inactive, Locked, User

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _user(**overrides) -> User:
    fields = {"is_active": True, "is_deleted": False, "locked_until": None, "failed_login_attempts": 0}
    fields.update(overrides)
    return User(**fields)


def test_plain_account_is_active():
    assert _user().credential_state(NOW) == Active()


def test_future_lock_is_locked():
    until = NOW + timedelta(minutes=30)
    assert _user(locked_until=until).credential_state(NOW) == Locked(until=until)


def test_lock_ending_now_counts_as_expired():
    assert _user(locked_until=NOW).credential_state(NOW) == Active()


def test_past_lock_is_active():
    assert _user(locked_until=NOW - timedelta(seconds=1)).credential_state(NOW) == Active()


def test_naive_lock_timestamp_is_read_as_utc():
    naive = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
    state = _user(locked_until=naive).credential_state(NOW)
    assert isinstance(state, Locked)
    assert state.until == NOW + timedelta(minutes=5)


def test_deactivated_account_is_inactive():
    assert _user(is_active=False).credential_state(NOW) == Inactive()


def test_deleted_account_is_inactive():
    assert _user(is_deleted=True).credential_state(NOW) == Inactive()


def test_running_lock_is_reported_before_inactivity():
    until = NOW + timedelta(minutes=1)
    assert isinstance(_user(is_active=False, locked_until=until).credential_state(NOW), Locked)
