"""
api/main.py -- FastAPI application entry point for ExamPort.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost, as a request meets them):
  1. log_requests          -- method, path, status, latency
  2. TrustedHostMiddleware -- rejects unexpected Host headers
  3. CORSMiddleware        -- CORS headers for the browser front-end
  4. SlowAPIMiddleware     -- per-route rate limits from api.limiter
  5. authorize_request     -- authorization filter + route policy (401/403)

Lifespan builds every service from Settings (signing secret, bcrypt cost,
token windows, SMTP) and stores them on app.state; nothing reads settings
behind the services' backs. It also runs the expired-token sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.email import router as email_router
from api.routes.v1.users import router as users_router
from auth.dependencies import FORBIDDEN_DETAIL, UNAUTHORIZED_DETAIL, resolve_identity
from auth.errors import InfrastructureError, ValidationFailure
from auth.lifecycle import TokenLifecycleManager
from auth.models import Role
from auth.notifier import EmailNotifier, Notifier
from auth.passwords import PasswordHasher
from auth.policy import Decision, RoutePolicy
from auth.service import AuthService
from auth.store import AccountStore, TokenStore, create_store_engine
from auth.tokens import SessionTokenService
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("examport.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_notifier(settings: Settings) -> EmailNotifier:
    return EmailNotifier(
        enabled=settings.email_enabled,
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
        from_name=settings.mail_from_name,
        base_url=settings.frontend_base_url,
        max_retries=settings.notifier_max_retries,
        retry_delay=settings.notifier_retry_delay_seconds,
    )


def init_app_state(
    app: FastAPI,
    settings: Settings,
    engine: Engine,
    notifier: Notifier,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Construct the auth services and attach them to app.state.

    Shared by the real lifespan and the test lifespan. When clock is given,
    the lifecycle manager and session service use it instead of the wall clock.
    """
    timing = {"clock": clock} if clock is not None else {}
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    accounts = AccountStore(engine)
    tokens = TokenStore(engine)
    sessions = SessionTokenService(settings.secret_key, expire_seconds=settings.token_expire_seconds, **timing)
    lifecycle = TokenLifecycleManager(
        accounts,
        tokens,
        hasher,
        email_verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
        password_reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        **timing,
    )
    app.state.engine = engine
    app.state.notifier = notifier
    app.state.session_tokens = sessions
    app.state.lifecycle = lifecycle
    app.state.route_policy = RoutePolicy()
    app.state.auth_service = AuthService(
        accounts,
        hasher,
        sessions,
        lifecycle,
        notifier,
        min_password_length=settings.min_password_length,
        registrable_roles=frozenset(Role(name) for name in settings.self_registration_roles),
    )


# ---------------------------------------------------------------------------
# Background token sweep
# ---------------------------------------------------------------------------


async def _token_sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired secondary tokens every interval_seconds.

    Hygiene only: validity never depends on the sweep having run.
    Any failure is logged and the loop carries on; only cancellation stops it.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.lifecycle.cleanup_expired)
        except Exception:
            logger.exception("Expired token sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime."""
    logger.info("ExamPort API starting up")
    engine = create_store_engine(_settings.database_url)
    init_app_state(app, _settings, engine, build_notifier(_settings))
    logger.info("Auth initialized (accounts=%d)", app.state.auth_service.accounts.count())
    app.state.sweep_task = asyncio.create_task(_token_sweep_loop(app, _settings.token_cleanup_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.engine.dispose()
    logger.info("ExamPort API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ExamPort API",
    description="Examination platform backend: accounts, sessions, email verification and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each registration wraps everything registered before it, so the
# authorization middleware goes first (innermost) and request logging last
# (outermost). CORS sits outside authorization so 401/403 replies still carry
# CORS headers.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def authorize_request(request: Request, call_next):
    """Authorization filter + route policy, once per request.

    The identity is passed explicitly to the policy and then parked on
    request.state, which is scoped to this request, for handler dependencies.
    """
    identity = resolve_identity(request.headers.get("Authorization"), request.app.state.session_tokens)
    decision = request.app.state.route_policy.evaluate(request.method, request.url.path, identity)
    if decision is Decision.UNAUTHORIZED:
        return JSONResponse(status_code=401, content={"error": UNAUTHORIZED_DETAIL})
    if decision is Decision.FORBIDDEN:
        return JSONResponse(status_code=403, content={"error": FORBIDDEN_DETAIL})
    request.state.identity = identity
    return await call_next(request)


app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(email_router, prefix="/api/v1", tags=["Email"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", None) or 60)
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc))
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(code="validation_error", message="Request validation failed.", detail=str(exc.errors()))
        ).model_dump(),
    )


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure) -> JSONResponse:
    """Domain-level rejections (existing username, weak password, ...). Message is user-facing."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )


@app.exception_handler(InfrastructureError)
@app.exception_handler(SQLAlchemyError)
async def infrastructure_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Store unavailable. Logged with traceback; the client gets a generic 503."""
    logger.error("Infrastructure failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(code="service_unavailable", message="The service is temporarily unavailable.")
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured dict details are used directly as the error field."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log, never the response."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
