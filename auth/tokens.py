"""
auth/tokens.py -- Session credential issuance and validation (JWT).

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with the server secret and
       carry the username (sub), role, iat and exp. validate() returns None on
       any failure (bad signature, tampered payload, expiry, missing or unknown
       claim) without saying which -- the route layer turns that into a 401.

  Stateless: there is no server-side session record and no revocation list.
       A leaked token stays valid until exp. This is an accepted risk; keep
       token_expire_seconds short in deployments that care.

  The secret and expiry are injected at construction from Settings, never
  read from module globals, so the service holds only immutable state and is
  safe to share across request threads.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Role, SessionClaims

logger = logging.getLogger("examport.auth")

_ALGORITHM = "HS256"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionTokenService:
    """Mints and verifies signed session credentials."""

    def __init__(
        self,
        secret_key: str,
        expire_seconds: int = 24 * 3600,
        algorithm: str = _ALGORITHM,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, username: str, role: Role) -> str:
        """Encode a signed JWT for the given identity."""
        now = self._clock()
        payload = {
            "sub": username,
            "role": Role(role).value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.expire_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def validate(self, token: str) -> SessionClaims | None:
        """Verify signature and expiry. Returns the claims or None on any failure.

        exp is checked against the injected clock rather than jose's own
        wall-clock check, so both paths agree in tests that move time.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return None

        try:
            username = payload["sub"]
            role = Role(payload["role"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, ValueError, TypeError):
            return None

        if not isinstance(username, str) or not username:
            return None
        if self._clock() >= expires_at:
            return None
        return SessionClaims(username=username, role=role, issued_at=issued_at, expires_at=expires_at)
