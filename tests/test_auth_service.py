"""
tests/test_auth_service.py -- Unit tests for AuthService orchestration.

Route-level behaviour is in test_auth_routes.py. These tests pin down the
parts that are hard to observe over HTTP:
  - unknown usernames still pay for one bcrypt verification
  - a registration that loses the insert race maps to a 409 conflict
  - a token store failure during registration keeps the account
  - password strength rules
  - reset and resend hand back a delivery instead of sending inline
  - self-registration role limits and re-verification after an email change
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import InfrastructureError, ValidationFailure
from auth.models import Role, TokenPurpose
from auth.service import AuthService


@pytest.fixture
def service(accounts, hasher, sessions, lifecycle, notifier) -> AuthService:
    return AuthService(accounts, hasher, sessions, lifecycle, notifier)


def test_unknown_username_verifies_against_dummy_hash(service, hasher) -> None:
    with patch.object(hasher, "verify", wraps=hasher.verify) as spy:
        assert service.authenticate("nobody", "whatever1") is None
    spy.assert_called_once_with("whatever1", hasher.dummy_hash)


def test_login_issues_session_for_role(service, sessions) -> None:
    service.register("prof", "prof@example.com", "secret123", role=Role.INSTRUCTOR)
    result = service.login("prof", "secret123")
    assert result is not None
    assert result.expires_in == sessions.expire_seconds
    claims = sessions.validate(result.token)
    assert claims.username == "prof"
    assert claims.role is Role.INSTRUCTOR


def test_register_race_maps_to_conflict(service, accounts) -> None:
    with patch.object(accounts, "save", side_effect=IntegrityError("INSERT", {}, Exception("UNIQUE"))):
        with pytest.raises(ValidationFailure) as exc_info:
            service.register("alice", "alice@example.com", "secret123")
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "conflict"


def test_register_survives_token_store_failure(service, accounts, lifecycle, notifier) -> None:
    with patch.object(lifecycle, "issue_token", side_effect=InfrastructureError("down")):
        result = service.register("alice", "alice@example.com", "secret123")
    assert result.verification_email_sent is False
    assert accounts.find_by_username("alice") is not None
    assert notifier.sent == []


def test_resend_for_verified_account_is_silent(service, accounts, notifier) -> None:
    result = service.register("alice", "alice@example.com", "secret123")
    account = result.account
    account.email_verified = True
    accounts.save(account)
    notifier.sent.clear()

    assert service.resend_verification("alice@example.com") is None
    assert notifier.sent == []


class TestDeferredDelivery:
    """Reset and resend issue the token now and leave sending to the caller."""

    def test_reset_request_issues_without_sending(self, service, lifecycle, notifier, alice) -> None:
        delivery = service.request_password_reset("alice@x.com")
        assert delivery is not None
        assert delivery.email == "alice@x.com"
        assert delivery.purpose is TokenPurpose.PASSWORD_RESET
        assert lifecycle.is_token_valid(delivery.token, TokenPurpose.PASSWORD_RESET)
        assert notifier.sent == []

        assert service.deliver_password_reset(delivery) is True
        assert notifier.last("reset") == ("alice@x.com", delivery.token)

    def test_resend_issues_without_sending(self, service, notifier, alice) -> None:
        delivery = service.resend_verification("alice@x.com")
        assert delivery is not None
        assert delivery.purpose is TokenPurpose.EMAIL_VERIFICATION
        assert notifier.sent == []

        service.deliver_verification(delivery)
        assert notifier.last("verify") == ("alice@x.com", delivery.token)

    def test_unknown_email_has_nothing_to_deliver(self, service) -> None:
        assert service.request_password_reset("ghost@x.com") is None
        assert service.resend_verification("ghost@x.com") is None

    @pytest.mark.parametrize("method", ["request_password_reset", "resend_verification"])
    def test_store_failure_looks_like_unknown_email(self, service, lifecycle, alice, method) -> None:
        with patch.object(lifecycle, "issue_token", side_effect=InfrastructureError("down")):
            assert getattr(service, method)("alice@x.com") is None


class TestSelfRegistrationRoles:
    def test_admin_cannot_self_register(self, service, accounts, notifier) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            service.register("mallory", "mallory@example.com", "secret123", role=Role.ADMIN)
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "role_not_allowed"
        assert accounts.find_by_username("mallory") is None
        assert notifier.sent == []

    def test_configured_roles_are_honoured(self, accounts, hasher, sessions, lifecycle, notifier) -> None:
        students_only = AuthService(
            accounts, hasher, sessions, lifecycle, notifier, registrable_roles=frozenset({Role.STUDENT})
        )
        with pytest.raises(ValidationFailure):
            students_only.register("prof", "prof@example.com", "secret123", role=Role.INSTRUCTOR)
        assert students_only.register("kid", "kid@example.com", "secret123").account.role is Role.STUDENT


class TestEmailChange:
    def test_new_email_must_be_verified_again(self, service, accounts, lifecycle, notifier, alice) -> None:
        alice.email_verified = True
        accounts.save(alice)

        updated = service.update_profile("alice", email="alice@new.com")
        assert updated.email == "alice@new.com"
        assert updated.email_verified is False
        assert accounts.find_by_username("alice").email_verified is False

        email, token = notifier.last("verify")
        assert email == "alice@new.com"
        assert lifecycle.verify_email(token) is True
        assert accounts.find_by_username("alice").email_verified is True

    def test_unchanged_email_keeps_verification(self, service, accounts, notifier, alice) -> None:
        alice.email_verified = True
        accounts.save(alice)

        updated = service.update_profile("alice", email="alice@x.com", full_name="Alice A")
        assert updated.email_verified is True
        assert notifier.sent == []


@pytest.mark.parametrize(
    "password,code",
    [("", "password_required"), ("      ", "password_required"), ("abc12", "weak_password")],
)
def test_password_strength(service, password, code) -> None:
    with pytest.raises(ValidationFailure) as exc_info:
        service.check_password_strength(password)
    assert exc_info.value.code == code
    assert exc_info.value.status_code == 400


def test_minimum_length_password_accepted(service) -> None:
    service.check_password_strength("abc123")


def test_notifier_exception_is_contained(service) -> None:
    send = MagicMock(side_effect=RuntimeError("boom"))
    assert service._notify(send, "alice@example.com", "tok") is False
