"""
API request and response models for ExamPort REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Account, Role

# bcrypt only looks at the first 72 bytes; keep passwords well under that.
_PASSWORD_MAX = 64

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class AuthHealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "OK"
    timestamp: int
    message: str = "Auth service is running"


class MessageResponse(BaseModel):
    """Generic outcome for token flows. success=False carries a deliberately vague message."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    role is optional and defaults to student. Roles outside
    self_registration_roles (admin, by default) are refused with 403.
    Password strength beyond the length bounds is checked by AuthService so
    the message matches the one used for password changes.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    role: Optional[Role] = None
    full_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    gender: Optional[str] = Field(default=None, max_length=30)
    phone_number: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class EmailRequest(BaseModel):
    """Body for password-reset requests, verification resends and test emails."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/users/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    gender: Optional[str] = Field(default=None, max_length=30)
    phone_number: Optional[str] = Field(default=None, max_length=50)
    current_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)
    new_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: Role
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    gender: Optional[str] = None
    phone_number: Optional[str] = None
    email_verified: bool

    @classmethod
    def from_account(cls, account: Account) -> "ProfileResponse":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            role=account.role,
            full_name=account.full_name,
            avatar_url=account.avatar_url,
            gender=account.gender,
            phone_number=account.phone_number,
            email_verified=account.email_verified,
        )


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: ProfileResponse
    verification_email_sent: bool
    message: str


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: ProfileResponse


class TokenValidityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class EmailStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_enabled: bool
    smtp_configured: bool
    message: str
