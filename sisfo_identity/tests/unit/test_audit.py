from __future__ import annotations

from sisfo_identity.services.audit import sanitize_values


def test_sanitize_values_redacts_sensitive_keys() -> None:
    payload = {
        "email": "a@school.test",
        "password": "secret",
        "nested": {"refresh_token": "x", "items": [{"Authorization": "Bearer y", "ok": 1}]},
        "password_hash": "h",
    }
    sanitized = sanitize_values(payload)
    assert sanitized["email"] == "a@school.test"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["password_hash"] == "[REDACTED]"
    assert sanitized["nested"]["refresh_token"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0] == {"Authorization": "[REDACTED]", "ok": 1}
    # The input is left untouched.
    assert payload["password"] == "secret"


def test_sanitize_values_passes_scalars_through() -> None:
    assert sanitize_values("plain") == "plain"
    assert sanitize_values(None) is None
