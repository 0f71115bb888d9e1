"""
auth/errors.py -- Exceptions raised by the auth service layer.

Expected outcomes (token not found, expired, already used, bad credentials)
are NOT exceptions -- they are ConsumeResult members or None returns. These
classes cover the two remaining cases: input the caller must fix, and
infrastructure the caller cannot fix.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth-layer exceptions."""


class ValidationFailure(AuthError):
    """Malformed or conflicting input. The message is safe to show to the user.

    code is a stable machine-readable identifier for the API error envelope.
    """

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class InfrastructureError(AuthError):
    """The account/token store is unavailable or failed mid-operation.

    Always raised with the original exception chained (raise ... from exc)
    so the traceback is logged by the API's exception handler. Never retried.
    """
