"""
api/routes/v1/auth.py -- Registration, login, email verification and password reset.

Routes (all public under the route policy):
  GET  /api/v1/auth/health                    -- auth service liveness
  POST /api/v1/auth/register                  -- create account, send verification link
  POST /api/v1/auth/login                     -- password login; returns bearer token
  GET  /api/v1/auth/verify-email?token=       -- consume an email verification token
  POST /api/v1/auth/request-password-reset    -- send reset link (same reply for any email)
  GET  /api/v1/auth/reset-password/validate   -- read-only reset token check
  POST /api/v1/auth/reset-password            -- consume reset token, set new password
  POST /api/v1/auth/resend-verification       -- send a fresh verification link

Security:
  Login and reset requests are rate-limited per IP.
  Reset and resend links are emailed after the response is sent, so the
  reply time is the same for registered and unknown emails.
  Login returns one error for unknown username and wrong password.
  Token failures (unknown, expired, used) return one message per endpoint.
  Cache-Control: no-store on responses that carry credentials.
"""

import logging
import time

from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthHealthResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenValidityResponse,
)
from auth.lifecycle import TokenLifecycleManager
from auth.models import TokenPurpose
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("examport.api")

router = APIRouter()

_settings = get_settings()

_RESET_REQUESTED = "If an account with this email exists, a password reset link has been sent."
_VERIFICATION_RESENT = "If an unverified account with this email exists, a new verification link has been sent."
_VERIFY_FAILED = "Email verification failed. The token may be invalid or expired."
_RESET_FAILED = "Password reset failed. The token may be invalid or expired."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _lifecycle(request: Request) -> TokenLifecycleManager:
    return request.app.state.lifecycle


@router.get("/auth/health", response_model=AuthHealthResponse)
async def auth_health() -> AuthHealthResponse:
    return AuthHealthResponse(timestamp=int(time.time() * 1000))


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account with role defaulting to student and an unverified email.

    The account is created even if the verification email cannot be sent;
    verification_email_sent tells the client whether to offer a resend.
    """
    result = _service(request).register(
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        full_name=body.full_name,
        avatar_url=body.avatar_url,
        gender=body.gender,
        phone_number=body.phone_number,
    )
    message = (
        "Registration successful! Please check your email to verify your account."
        if result.verification_email_sent
        else "Registration successful! However, verification email could not be sent."
    )
    return RegisterResponse(
        user=ProfileResponse.from_account(result.account),
        verification_email_sent=result.verification_email_sent,
        message=message,
    )


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a bearer session token.

    Unknown username and wrong password both produce 401 bad_credentials.
    """
    result = _service(request).login(body.username, body.password)
    if result is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            user=ProfileResponse.from_account(result.account),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, token: str = Query(min_length=1, max_length=128)) -> JSONResponse:
    if _lifecycle(request).verify_email(token):
        return JSONResponse(
            content=MessageResponse(
                success=True, message="Email verified successfully! You can now log in to your account."
            ).model_dump()
        )
    return JSONResponse(status_code=400, content=MessageResponse(success=False, message=_VERIFY_FAILED).model_dump())


@router.post("/auth/request-password-reset", response_model=MessageResponse)
@limiter.limit(_settings.password_reset_rate_limit)
def request_password_reset(request: Request, body: EmailRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Always answers the same way so the response does not reveal registered emails."""
    service = _service(request)
    delivery = service.request_password_reset(body.email)
    if delivery is not None:
        background_tasks.add_task(service.deliver_password_reset, delivery)
    return MessageResponse(success=True, message=_RESET_REQUESTED)


@router.get("/auth/reset-password/validate", response_model=TokenValidityResponse)
def validate_reset_token(request: Request, token: str = Query(min_length=1, max_length=128)) -> TokenValidityResponse:
    """Let the reset page check a link before asking for a new password. Does not consume it."""
    return TokenValidityResponse(valid=_lifecycle(request).is_token_valid(token, TokenPurpose.PASSWORD_RESET))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    service = _service(request)
    service.check_password_strength(body.new_password)
    if service.lifecycle.reset_password(body.token, body.new_password):
        return JSONResponse(
            content=MessageResponse(
                success=True, message="Password reset successfully! You can now log in with your new password."
            ).model_dump()
        )
    return JSONResponse(status_code=400, content=MessageResponse(success=False, message=_RESET_FAILED).model_dump())


@router.post("/auth/resend-verification", response_model=MessageResponse)
@limiter.limit(_settings.password_reset_rate_limit)
def resend_verification(request: Request, body: EmailRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    service = _service(request)
    delivery = service.resend_verification(body.email)
    if delivery is not None:
        background_tasks.add_task(service.deliver_verification, delivery)
    return MessageResponse(success=True, message=_VERIFICATION_RESENT)
