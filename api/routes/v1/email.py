"""
api/routes/v1/email.py -- Email delivery diagnostics for staff.

Routes (admin or instructor under the route policy):
  POST /api/v1/email/test    -- send a test email to the given address
  GET  /api/v1/email/status  -- report whether delivery is enabled/configured

The handlers repeat the role check with require_roles() so they stay
protected even if mounted under a different prefix.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import EmailRequest, EmailStatusResponse, MessageResponse
from auth.dependencies import require_roles
from auth.models import Identity, Role
from auth.notifier import Notifier, redact_email

logger = logging.getLogger("examport.api")

router = APIRouter()

_require_staff = require_roles(Role.ADMIN, Role.INSTRUCTOR)


@router.post("/email/test", response_model=MessageResponse)
def send_test_email(
    request: Request,
    body: EmailRequest,
    identity: Identity = Depends(_require_staff),
) -> MessageResponse:
    logger.info("Test email to %s requested by %s", redact_email(body.email), identity.username)
    if request.app.state.notifier.send_test_email(body.email):
        return MessageResponse(success=True, message=f"Test email sent successfully to {body.email}")
    return MessageResponse(success=False, message="Failed to send test email. Check email configuration.")


@router.get("/email/status", response_model=EmailStatusResponse)
def email_status(request: Request, identity: Identity = Depends(_require_staff)) -> EmailStatusResponse:
    notifier: Notifier = request.app.state.notifier
    enabled = notifier.enabled
    configured = notifier.is_configured
    if not enabled:
        message = "Email notifications are disabled"
    elif configured:
        message = "Email service is configured and ready"
    else:
        message = "Email service is in dev mode; links are written to the log"
    return EmailStatusResponse(email_enabled=enabled, smtp_configured=configured, message=message)
