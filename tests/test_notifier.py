"""
tests/test_notifier.py -- Unit tests for EmailNotifier.

No real SMTP server is contacted: smtplib.SMTP is replaced with a MagicMock,
or _send is replaced to inject failures. time.sleep is patched out so the
backoff schedule can be asserted without waiting.

Covers:
  - disabled: nothing sent, reported as not sent
  - dev mode (no smtp_host): link logged, reported as sent
  - SMTP path: STARTTLS, login, sendmail with the right link
  - transient failures retried with exponential backoff, then give up
  - permanent failures are not retried and never raise
  - redact_email
"""

from __future__ import annotations

import logging
import smtplib
from unittest.mock import MagicMock

import pytest

from auth.notifier import EmailNotifier, redact_email


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    calls: list[float] = []
    monkeypatch.setattr("auth.notifier.time.sleep", calls.append)
    return calls


def _smtp_notifier(**overrides) -> EmailNotifier:
    options = {
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer",
        "smtp_password": "hunter2",
        "base_url": "https://exams.example.com/",
        "max_retries": 2,
        "retry_delay": 1.0,
    }
    options.update(overrides)
    return EmailNotifier(**options)


def test_disabled_sends_nothing(monkeypatch) -> None:
    smtp = MagicMock()
    monkeypatch.setattr("auth.notifier.smtplib.SMTP", smtp)
    notifier = _smtp_notifier(enabled=False)
    assert notifier.send_verification_link("a@example.com", "tok") is False
    smtp.assert_not_called()


def test_dev_mode_logs_link(caplog) -> None:
    notifier = EmailNotifier(base_url="http://localhost:5173")
    assert notifier.is_configured is False
    with caplog.at_level(logging.INFO, logger="examport.notifier"):
        assert notifier.send_password_reset_link("alice@example.com", "abc123") is True
    assert "http://localhost:5173/reset-password?token=abc123" in caplog.text
    assert "alice@example.com" not in caplog.text


def test_smtp_delivery(monkeypatch) -> None:
    smtp = MagicMock()
    monkeypatch.setattr("auth.notifier.smtplib.SMTP", smtp)
    notifier = _smtp_notifier()

    assert notifier.send_verification_link("alice@example.com", "abc123") is True

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
    server = smtp.return_value.__enter__.return_value
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "hunter2")
    from_addr, to_addr, body = server.sendmail.call_args.args
    assert from_addr == notifier.from_email
    assert to_addr == "alice@example.com"
    assert "https://exams.example.com/verify-email?token=abc123" in body


def test_transient_failure_retried_then_succeeds(sleeps) -> None:
    notifier = _smtp_notifier()
    notifier._send = MagicMock(side_effect=[smtplib.SMTPServerDisconnected("gone"), None])
    assert notifier.send_test_email("ops@example.com") is True
    assert notifier._send.call_count == 2
    assert sleeps == [1.0]


def test_transient_failure_gives_up_after_retries(sleeps) -> None:
    notifier = _smtp_notifier()
    notifier._send = MagicMock(side_effect=ConnectionRefusedError("refused"))
    assert notifier.send_password_reset_link("a@example.com", "tok") is False
    assert notifier._send.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_permanent_failure_not_retried(sleeps) -> None:
    notifier = _smtp_notifier()
    notifier._send = MagicMock(side_effect=smtplib.SMTPAuthenticationError(535, b"bad credentials"))
    assert notifier.send_verification_link("a@example.com", "tok") is False
    assert notifier._send.call_count == 1
    assert sleeps == []


@pytest.mark.parametrize(
    "email,expected",
    [
        ("alice@example.com", "al***@example.com"),
        ("a@x.com", "a***@x.com"),
        ("no-at-sign", "redacted"),
    ],
)
def test_redact_email(email, expected) -> None:
    assert redact_email(email) == expected
