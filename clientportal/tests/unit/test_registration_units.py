"""
Unit tests for registration_service helpers.
"""

from __future__ import annotations

import pytest

from clientportal.app.services.registration_service import sanitize_name


@pytest.mark.parametrize("raw, expected", [
    ("Alice", "Alice"),
    ("  Anne   Marie ", "Anne Marie"),
    ("O'Brien-Smith", "O'Brien-Smith"),
    ("J. R. R.", "J. R. R."),
    ("<script>alert(1)</script>", "scriptalertscript"),
    ("Zoë Müller", "Zoë Müller"),
    ("Agent 007", "Agent"),
    ("", ""),
    (None, ""),
])
def test_sanitize_name(raw, expected):
    assert sanitize_name(raw) == expected
