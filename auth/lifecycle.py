"""
auth/lifecycle.py -- Secondary token lifecycle: issue, consume, invalidate, sweep.

State machine per token:
    CREATED (used=False, unexpired)
      -> CONSUMED   (used=True)   successful consume_token()
      -> SUPERSEDED (used=True)   later issue_token() for the same account/purpose
      -> EXPIRED                  clock passes expires_at; removed by cleanup_expired()
  used never goes back to False.

Atomicity:
  issue_token()   lock account row -> invalidate prior tokens -> insert, one transaction.
  consume_token() compare-and-set claim -> side effect, one transaction. The
                  claim's WHERE used = false AND expires_at > now picks exactly
                  one winner among concurrent consumers.
  Notification is NOT done here. Callers commit first, then notify.

Expected outcomes come back as ConsumeResult; only store failures raise
(InfrastructureError).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InfrastructureError
from auth.models import Account, ConsumeResult, SecondaryToken, TokenPurpose
from auth.passwords import PasswordHasher
from auth.store import AccountStore, TokenStore

logger = logging.getLogger("examport.lifecycle")

DEFAULT_EMAIL_VERIFICATION_TTL = timedelta(hours=24)
DEFAULT_PASSWORD_RESET_TTL = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Return an unguessable URL-safe token (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


class TokenLifecycleManager:
    """Issues and consumes single-use email-verification and password-reset tokens."""

    def __init__(
        self,
        accounts: AccountStore,
        tokens: TokenStore,
        hasher: PasswordHasher,
        email_verification_ttl: timedelta = DEFAULT_EMAIL_VERIFICATION_TTL,
        password_reset_ttl: timedelta = DEFAULT_PASSWORD_RESET_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._accounts = accounts
        self._tokens = tokens
        self._hasher = hasher
        self._ttl = {
            TokenPurpose.EMAIL_VERIFICATION: email_verification_ttl,
            TokenPurpose.PASSWORD_RESET: password_reset_ttl,
        }
        self._clock = clock

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        return self._ttl[TokenPurpose(purpose)]

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_token(self, account: Account, purpose: TokenPurpose) -> str:
        """Supersede the account's outstanding tokens of this purpose and mint a new one.

        Returns the plaintext token for the notifier. Raises InfrastructureError
        if the store fails; nothing is committed in that case.
        """
        if account.id is None:
            raise ValueError("cannot issue a token for an unsaved account")
        purpose = TokenPurpose(purpose)
        now = self._clock()
        record = SecondaryToken(
            token=generate_token(),
            account_id=account.id,
            purpose=purpose,
            created_at=now,
            expires_at=now + self._ttl[purpose],
        )
        try:
            with self._tokens.transaction() as conn:
                if not self._accounts.lock(conn, account.id):
                    raise ValueError(f"account {account.id} does not exist")
                superseded = self._tokens.mark_all_user_tokens_used(conn, account.id, purpose)
                self._tokens.save(conn, record)
        except SQLAlchemyError as exc:
            logger.error("Token issuance failed for account %s (%s)", account.id, purpose.value)
            raise InfrastructureError("token store unavailable") from exc

        logger.info(
            "Issued %s token for account %s (superseded %d, expires %s)",
            purpose.value,
            account.id,
            superseded,
            record.expires_at.isoformat(),
        )
        return record.token

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume_token(self, token: str, purpose: TokenPurpose, new_password: str | None = None) -> ConsumeResult:
        """Present a token once and apply its side effect.

        EMAIL_VERIFICATION marks the owner's email verified. PASSWORD_RESET
        stores a hash of new_password, which is then required. A replay after
        success returns ALREADY_USED and changes nothing.
        """
        purpose = TokenPurpose(purpose)
        if purpose is TokenPurpose.PASSWORD_RESET and not new_password:
            raise ValueError("new_password is required to consume a password reset token")
        # Hash outside the transaction so bcrypt's cost does not hold the write lock.
        new_hash = self._hasher.hash(new_password) if new_password else None
        return self._consume(token, purpose, new_hash, invalidate_siblings=False)

    def verify_email(self, token: str) -> bool:
        return self.consume_token(token, TokenPurpose.EMAIL_VERIFICATION).succeeded

    def reset_password(self, token: str, new_password: str) -> bool:
        """Consume a PASSWORD_RESET token, store the new password hash, and
        invalidate every other outstanding reset token for the same account.
        """
        if not new_password:
            return False
        new_hash = self._hasher.hash(new_password)
        return self._consume(token, TokenPurpose.PASSWORD_RESET, new_hash, invalidate_siblings=True).succeeded

    def _consume(
        self,
        token: str,
        purpose: TokenPurpose,
        new_hash: str | None,
        invalidate_siblings: bool,
    ) -> ConsumeResult:
        if not token:
            return ConsumeResult.NOT_FOUND
        try:
            with self._tokens.transaction() as conn:
                record = self._tokens.find_by_token_and_purpose(token, purpose, conn=conn)
                if record is None:
                    result = ConsumeResult.NOT_FOUND
                else:
                    now = self._clock()
                    result = self._classify(record, now)
                    if result is ConsumeResult.SUCCESS:
                        if not self._tokens.claim(conn, record.id, now):
                            # Lost the race or expired between read and claim.
                            result = ConsumeResult.EXPIRED if now >= record.expires_at else ConsumeResult.ALREADY_USED
                        else:
                            self._apply(conn, record, new_hash)
                            if invalidate_siblings:
                                self._tokens.mark_all_user_tokens_used(
                                    conn, record.account_id, purpose, exclude_id=record.id
                                )
        except SQLAlchemyError as exc:
            logger.error("Token consumption failed (%s)", purpose.value)
            raise InfrastructureError("token store unavailable") from exc

        if result is ConsumeResult.SUCCESS:
            logger.info("Consumed %s token for account %s", purpose.value, record.account_id)
        else:
            logger.warning("Rejected %s token: %s", purpose.value, result.value)
        return result

    @staticmethod
    def _classify(record: SecondaryToken, now: datetime) -> ConsumeResult:
        if record.used:
            return ConsumeResult.ALREADY_USED
        if now >= record.expires_at:
            return ConsumeResult.EXPIRED
        return ConsumeResult.SUCCESS

    def _apply(self, conn, record: SecondaryToken, new_hash: str | None) -> None:
        if record.purpose is TokenPurpose.EMAIL_VERIFICATION:
            self._accounts.set_email_verified(conn, record.account_id)
        elif record.purpose is TokenPurpose.PASSWORD_RESET:
            if new_hash is None:
                raise ValueError("password reset requires a new password hash")
            self._accounts.set_password(conn, record.account_id, new_hash)

    # ------------------------------------------------------------------
    # Queries and hygiene
    # ------------------------------------------------------------------

    def is_token_valid(self, token: str, purpose: TokenPurpose) -> bool:
        """Read-only check: does this token exist, unused and unexpired, for this purpose?"""
        if not token:
            return False
        try:
            record = self._tokens.find_by_token_and_purpose(token, TokenPurpose(purpose))
        except SQLAlchemyError as exc:
            raise InfrastructureError("token store unavailable") from exc
        return record is not None and record.is_valid(self._clock())

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete expired tokens. Unexpired tokens are never touched."""
        cutoff = now or self._clock()
        try:
            removed = self._tokens.delete_expired(cutoff)
        except SQLAlchemyError as exc:
            raise InfrastructureError("token store unavailable") from exc
        logger.info("Expired token sweep removed %d token(s)", removed)
        return removed
