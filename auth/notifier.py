"""
auth/notifier.py -- Delivery of verification and password-reset links by email.

The notifier is fire-and-forget from the token lifecycle's point of view:
every public method returns True/False and never raises. Callers issue and
commit the token first, then notify, so a delivery failure can never roll
back or block issuance.

Delivery modes:
  email_enabled=False      -- sends are skipped and reported as not sent.
  smtp_host empty          -- dev mode: the link is logged instead of sent
                              (reported as sent so local sign-up works).
  smtp_host configured     -- SMTP with STARTTLS (or implicit TLS), retried
                              with exponential backoff on transient errors.

Email addresses are redacted in logs. Token values are only logged in dev mode,
where the log line IS the delivery channel.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

logger = logging.getLogger("examport.notifier")

# Connection-level failures worth another attempt. Authentication and
# recipient errors are permanent and fail immediately.
_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    smtplib.SMTPConnectError,
    smtplib.SMTPServerDisconnected,
    TimeoutError,
    ConnectionError,
)


class Notifier(Protocol):
    enabled: bool

    @property
    def is_configured(self) -> bool: ...

    def send_verification_link(self, email: str, token: str) -> bool: ...

    def send_password_reset_link(self, email: str, token: str) -> bool: ...

    def send_test_email(self, email: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP-backed Notifier."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "no-reply@examwizards.com",
        from_name: str = "ExamWizards",
        base_url: str = "http://localhost:5173",
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self.enabled = enabled
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_verification_link(self, email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        text_body = (
            "Welcome to ExamWizards!\n\n"
            f"Please verify your email address by opening this link:\n{url}\n\n"
            "This link expires in 24 hours. If you did not create an account, ignore this email."
        )
        html_body = (
            "<p>Welcome to ExamWizards!</p>"
            f'<p>Please verify your email address: <a href="{url}">Verify email</a></p>'
            "<p>This link expires in 24 hours. If you did not create an account, ignore this email.</p>"
        )
        return self._deliver(email, "Verify Your Email - ExamWizards", html_body, text_body, link=url)

    def send_password_reset_link(self, email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        text_body = (
            "We received a request to reset your ExamWizards password.\n\n"
            f"Reset it here:\n{url}\n\n"
            "This link expires in 30 minutes and can be used once. "
            "If you did not request a reset, ignore this email."
        )
        html_body = (
            "<p>We received a request to reset your ExamWizards password.</p>"
            f'<p><a href="{url}">Reset password</a></p>'
            "<p>This link expires in 30 minutes and can be used once. "
            "If you did not request a reset, ignore this email.</p>"
        )
        return self._deliver(email, "Reset Your Password - ExamWizards", html_body, text_body, link=url)

    def send_test_email(self, email: str) -> bool:
        text_body = (
            "This is a test email to verify that the email configuration is working correctly.\n\n"
            "If you receive this email, the email service is configured properly!"
        )
        return self._deliver(email, "ExamWizards - Email Configuration Test", f"<p>{text_body}</p>", text_body)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str, link: str | None = None) -> bool:
        if not self.enabled:
            logger.info("Email disabled -- skipping '%s' to %s", subject, redact_email(to_email))
            return False

        if not self.is_configured:
            logger.info("Email dev mode -- '%s' to %s: %s", subject, redact_email(to_email), link or text_body[:200])
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        for attempt in range(self.max_retries + 1):
            try:
                self._send(to_email, msg)
                logger.info("Email '%s' sent to %s", subject, redact_email(to_email))
                return True
            except _TRANSIENT_ERRORS as exc:
                if attempt < self.max_retries:
                    delay = self.retry_delay * (2**attempt)
                    logger.warning(
                        "Transient SMTP error sending to %s (attempt %d/%d), retrying in %.1fs: %s",
                        redact_email(to_email),
                        attempt + 1,
                        self.max_retries + 1,
                        delay,
                        exc,
                    )
                    time.sleep(delay)
                    continue
                logger.error("Email to %s failed after %d attempts: %s", redact_email(to_email), attempt + 1, exc)
                return False
            except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
                logger.error("Email to %s failed: %s: %s", redact_email(to_email), type(exc).__name__, exc)
                return False
        return False

    def _send(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
