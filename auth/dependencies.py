"""
auth/dependencies.py -- Request authorization filter and FastAPI Depends() helpers.

resolve_identity() is the filter proper: it turns an Authorization header into
an Identity or None and never raises. api/main.py calls it once per request
from the authorization middleware, passes the result explicitly into
RoutePolicy.evaluate(), and stores it on request.state -- which is
request-scoped -- for handlers.

Handlers read the identity through these dependencies:
  get_identity()        -- Identity or HTTP 401
  require_roles(*roles) -- Identity with a listed role, else 401/403

A missing or invalid credential always produces the same 401 body; the
caller cannot tell a bad signature from an expired token.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system. No imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import Identity, Role
from auth.tokens import SessionTokenService

UNAUTHORIZED_DETAIL = {"code": "unauthorized", "message": "Authentication required."}
FORBIDDEN_DETAIL = {"code": "forbidden", "message": "You do not have permission to perform this action."}


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def resolve_identity(authorization: str | None, sessions: SessionTokenService) -> Identity | None:
    """Validate the bearer credential, if any. Absent or invalid -> None."""
    token = extract_bearer_token(authorization)
    if token is None:
        return None
    claims = sessions.validate(token)
    if claims is None:
        return None
    return Identity(username=claims.username, role=claims.role)


def try_get_identity(request: Request) -> Identity | None:
    """Soft variant: the identity the filter attached to this request, or None."""
    return getattr(request.state, "identity", None)


def get_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/users/me")
        def me(identity: Identity = Depends(get_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)
    return identity


def require_roles(*roles: Role) -> Callable[[Request], Identity]:
    """Build a dependency that requires one of the given roles.

    Raises HTTP 401 if unauthenticated, HTTP 403 if the role is not allowed.
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if identity.role not in allowed:
            raise HTTPException(status_code=403, detail=FORBIDDEN_DETAIL)
        return identity

    return dependency
