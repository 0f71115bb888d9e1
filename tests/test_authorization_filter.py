"""
tests/test_authorization_filter.py -- The request authorization filter, unit and end to end.

Unit level:
  - extract_bearer_token parses only well-formed Bearer headers
  - resolve_identity returns None for absent/invalid credentials and never raises
  - get_identity / require_roles raise 401/403 with the shared error bodies

Through the real ASGI stack:
  - protected route without a token -> 401
  - tampered or expired token -> 401, same body as no token
  - wrong role -> 403; right role -> handler runs
  - public routes ignore a bad token instead of rejecting it
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from auth.dependencies import (
    FORBIDDEN_DETAIL,
    UNAUTHORIZED_DETAIL,
    extract_bearer_token,
    get_identity,
    require_roles,
    resolve_identity,
)
from auth.models import Identity, Role


def _request(identity: Identity | None = None) -> SimpleNamespace:
    state = SimpleNamespace() if identity is None else SimpleNamespace(identity=identity)
    return SimpleNamespace(state=state)


# ---------------------------------------------------------------------------
# Unit
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer abc", "abc"),
        ("Bearer   abc  ", "abc"),
        ("Bearer", None),
        ("Bearer ", None),
        ("Basic dXNlcjpwYXNz", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected) -> None:
    assert extract_bearer_token(header) == expected


def test_resolve_identity_valid(sessions) -> None:
    token = sessions.issue("prof", Role.INSTRUCTOR)
    assert resolve_identity(f"Bearer {token}", sessions) == Identity("prof", Role.INSTRUCTOR)


def test_resolve_identity_absent_or_invalid(sessions) -> None:
    assert resolve_identity(None, sessions) is None
    assert resolve_identity("Bearer not-a-token", sessions) is None
    assert resolve_identity("Token abc", sessions) is None


def test_resolve_identity_expired(sessions, clock) -> None:
    token = sessions.issue("prof", Role.INSTRUCTOR)
    clock.advance(hours=2)
    assert resolve_identity(f"Bearer {token}", sessions) is None


def test_get_identity_requires_authentication() -> None:
    with pytest.raises(HTTPException) as exc_info:
        get_identity(_request())
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == UNAUTHORIZED_DETAIL


def test_require_roles() -> None:
    staff_only = require_roles(Role.ADMIN, Role.INSTRUCTOR)
    prof = Identity("prof", Role.INSTRUCTOR)
    assert staff_only(_request(prof)) == prof

    with pytest.raises(HTTPException) as exc_info:
        staff_only(_request(Identity("kid", Role.STUDENT)))
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == FORBIDDEN_DETAIL

    with pytest.raises(HTTPException) as exc_info:
        staff_only(_request())
    assert exc_info.value.status_code == 401


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestFilterThroughApp:
    def test_missing_token_is_401(self, api) -> None:
        resp = api.client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json() == {"error": UNAUTHORIZED_DETAIL}

    def test_tampered_token_is_indistinguishable_from_missing(self, api) -> None:
        api.register("alice", "alice@example.com")
        headers = api.bearer("alice", "secret123")
        token = headers["Authorization"].removeprefix("Bearer ")
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}x.{signature}"

        resp = api.client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {tampered}"})
        assert resp.status_code == 401
        assert resp.json() == api.client.get("/api/v1/users/me").json()

    def test_expired_token_is_401(self, api) -> None:
        api.register("alice", "alice@example.com")
        headers = api.bearer("alice", "secret123")
        assert api.client.get("/api/v1/users/me", headers=headers).status_code == 200
        api.clock.advance(days=1)
        resp = api.client.get("/api/v1/users/me", headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"error": UNAUTHORIZED_DETAIL}

    def test_student_forbidden_from_email_diagnostics(self, api) -> None:
        resp = api.client.get("/api/v1/email/status", headers=api.session_for("kid", Role.STUDENT))
        assert resp.status_code == 403
        assert resp.json() == {"error": FORBIDDEN_DETAIL}

    def test_instructor_reaches_email_status(self, api) -> None:
        resp = api.client.get("/api/v1/email/status", headers=api.session_for("prof", Role.INSTRUCTOR))
        assert resp.status_code == 200
        data = resp.json()
        assert data["email_enabled"] is True
        assert data["smtp_configured"] is False

    def test_admin_can_send_test_email(self, api) -> None:
        resp = api.client.post(
            "/api/v1/email/test",
            json={"email": "ops@example.com"},
            headers=api.session_for("root", Role.ADMIN),
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert api.notifier.sent[-1] == ("test", "ops@example.com", "")

    def test_public_route_ignores_bad_token(self, api) -> None:
        resp = api.client.get("/api/v1/health", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 200

    def test_cors_preflight_is_not_blocked(self, api) -> None:
        resp = api.client.options(
            "/api/v1/users/me",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
        )
        assert resp.status_code == 200
