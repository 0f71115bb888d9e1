"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores and services do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed role vocabulary. Adding a member requires updating auth/policy.py."""

    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


# Lowest-privilege role, assigned when registration omits one.
DEFAULT_ROLE = Role.STUDENT


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class ConsumeResult(str, Enum):
    """Outcome of presenting a secondary token.

    Only SUCCESS performed a side effect. The API layer collapses every other
    member into one generic message so callers cannot tell which case occurred.
    """

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"

    @property
    def succeeded(self) -> bool:
        return self is ConsumeResult.SUCCESS


@dataclass
class Account:
    """A registered ExamPort user.

    hashed_password is always a bcrypt hash. The plaintext never reaches this
    object.
    """

    username: str
    email: str
    hashed_password: str
    role: Role = DEFAULT_ROLE
    id: int | None = None
    full_name: str | None = None
    avatar_url: str | None = None
    gender: str | None = None
    phone_number: str | None = None
    email_verified: bool = False
    created_at: datetime | None = None


@dataclass
class SecondaryToken:
    """A single-use, time-limited token for email verification or password reset.

    Valid iff not used and the current time is strictly before expires_at.
    purpose and account_id never change after creation; used only moves
    from False to True.
    """

    token: str
    account_id: int
    purpose: TokenPurpose
    created_at: datetime
    expires_at: datetime
    used: bool = False
    id: int | None = None

    def is_valid(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass(frozen=True)
class SessionClaims:
    """Verified claims of a session credential."""

    username: str
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of one request, produced by the authorization filter."""

    username: str
    role: Role
