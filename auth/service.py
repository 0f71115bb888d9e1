"""
auth/service.py -- Login, registration and account self-service orchestration.

AuthService is the only place that combines the directory, the hasher, the
session issuer, the token lifecycle and the notifier. Route handlers call it
and map its return values and exceptions to HTTP responses.

Enumeration policy:
  - login: unknown username and wrong password are indistinguishable, in both
    result and timing (bcrypt always runs once).
  - password reset request / resend verification: the caller gets the same
    outcome whether or not the email exists. These methods only issue the
    token and hand back a PendingDelivery; the route sends it after the
    response so SMTP latency cannot reveal that an account exists. A store
    failure is logged and swallowed for the same reason.
  - self-registration is limited to registrable_roles (student and
    instructor by default). Admins are created with `main.py create-user`.
  - registration: "username exists" and "email exists" ARE reported
    separately. This is a small enumeration oracle kept for usability; see
    DESIGN.md.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from auth.errors import InfrastructureError, ValidationFailure
from auth.lifecycle import TokenLifecycleManager
from auth.models import DEFAULT_ROLE, Account, Role, TokenPurpose
from auth.notifier import Notifier, redact_email
from auth.passwords import PasswordHasher
from auth.store import AccountStore
from auth.tokens import SessionTokenService

logger = logging.getLogger("examport.auth")


@dataclass(frozen=True)
class RegistrationResult:
    account: Account
    verification_email_sent: bool


@dataclass(frozen=True)
class LoginResult:
    account: Account
    token: str
    expires_in: int


@dataclass(frozen=True)
class PendingDelivery:
    """A committed token that still has to be sent to its owner."""

    email: str
    token: str
    purpose: TokenPurpose


SELF_REGISTRATION_ROLES: frozenset[Role] = frozenset({Role.STUDENT, Role.INSTRUCTOR})


class AuthService:
    def __init__(
        self,
        accounts: AccountStore,
        hasher: PasswordHasher,
        sessions: SessionTokenService,
        lifecycle: TokenLifecycleManager,
        notifier: Notifier,
        min_password_length: int = 6,
        registrable_roles: frozenset[Role] = SELF_REGISTRATION_ROLES,
    ) -> None:
        self.accounts = accounts
        self.hasher = hasher
        self.sessions = sessions
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.min_password_length = min_password_length
        self.registrable_roles = frozenset(registrable_roles)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        role: Role | None = None,
        full_name: str | None = None,
        avatar_url: str | None = None,
        gender: str | None = None,
        phone_number: str | None = None,
    ) -> RegistrationResult:
        """Create an unverified account and send its first verification link.

        Raises ValidationFailure on a role that cannot self-register, a weak
        password or an existing username/email. The account is committed
        before the verification email is attempted; a delivery failure is
        reported in the result, not raised.
        """
        role = role or DEFAULT_ROLE
        if role not in self.registrable_roles:
            logger.warning("Registration rejected -- role %s cannot self-register: %s", role.value, username)
            raise ValidationFailure("role_not_allowed", f"The {role.value} role cannot be self-assigned", status_code=403)
        self.check_password_strength(password)
        if self.accounts.exists_by_username(username):
            logger.warning("Registration rejected -- username already exists: %s", username)
            raise ValidationFailure("username_exists", "Username already exists", status_code=409)
        if self.accounts.exists_by_email(email):
            logger.warning("Registration rejected -- email already exists: %s", redact_email(email))
            raise ValidationFailure("email_exists", "Email already exists", status_code=409)

        candidate = Account(
            username=username,
            email=email,
            hashed_password=self.hasher.hash(password),
            role=role,
            full_name=full_name,
            avatar_url=avatar_url,
            gender=gender,
            phone_number=phone_number,
            email_verified=False,
        )
        try:
            account = self.accounts.save(candidate)
        except IntegrityError as exc:
            # A concurrent registration won between the pre-checks and the insert.
            raise ValidationFailure(
                "conflict", "Username or email already exists", status_code=409
            ) from exc

        sent = self.send_email_verification(account)
        logger.info("Registered %s with role %s (verification sent: %s)", account.username, account.role.value, sent)
        return RegistrationResult(account=account, verification_email_sent=sent)

    def send_email_verification(self, account: Account) -> bool:
        """Issue a fresh EMAIL_VERIFICATION token, then hand it to the notifier.

        Returns False if either step failed. Issuance is committed before the
        notifier runs, so a delivery failure leaves a valid token behind.
        """
        delivery = self._issue(account, TokenPurpose.EMAIL_VERIFICATION)
        if delivery is None:
            return False
        return self.deliver_verification(delivery)

    def deliver_verification(self, delivery: PendingDelivery) -> bool:
        return self._notify(self.notifier.send_verification_link, delivery.email, delivery.token)

    def deliver_password_reset(self, delivery: PendingDelivery) -> bool:
        return self._notify(self.notifier.send_password_reset_link, delivery.email, delivery.token)

    def _issue(self, account: Account, purpose: TokenPurpose) -> PendingDelivery | None:
        try:
            token = self.lifecycle.issue_token(account, purpose)
        except InfrastructureError:
            logger.exception("Could not issue %s token for %s", purpose.value, account.username)
            return None
        return PendingDelivery(email=account.email, token=token, purpose=purpose)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> Account | None:
        """Return the account if the credentials match, else None.

        Always runs bcrypt once, against a dummy hash when the username is
        unknown, so response time does not reveal which usernames exist.
        """
        account = self.accounts.find_by_username(username)
        if account is None:
            self.hasher.verify(password, self.hasher.dummy_hash)
            return None
        if not self.hasher.verify(password, account.hashed_password):
            return None
        return account

    def login(self, username: str, password: str) -> LoginResult | None:
        account = self.authenticate(username, password)
        if account is None:
            logger.warning("Login failed for username: %s", username)
            return None
        token = self.sessions.issue(account.username, account.role)
        logger.info("Login succeeded for %s (%s)", account.username, account.role.value)
        return LoginResult(account=account, token=token, expires_in=self.sessions.expire_seconds)

    # ------------------------------------------------------------------
    # Email verification / password reset requests
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> PendingDelivery | None:
        """Issue a reset token if an account has this email.

        The link is not sent here. The caller passes the returned delivery to
        deliver_password_reset once its response is out, so known and unknown
        emails take the same time to answer. None means nothing to send,
        either because the email is unknown or because the store failed.
        """
        account = self.accounts.find_by_email(email)
        if account is None:
            logger.warning("Password reset requested for unknown email %s", redact_email(email))
            return None
        return self._issue(account, TokenPurpose.PASSWORD_RESET)

    def resend_verification(self, email: str) -> PendingDelivery | None:
        """Issue a new verification token for an unverified account. Silent otherwise.

        Delivery is deferred the same way as request_password_reset.
        """
        account = self.accounts.find_by_email(email)
        if account is None:
            logger.warning("Verification resend requested for unknown email %s", redact_email(email))
            return None
        if account.email_verified:
            logger.info("Verification resend skipped -- %s already verified", account.username)
            return None
        return self._issue(account, TokenPurpose.EMAIL_VERIFICATION)

    # ------------------------------------------------------------------
    # Self-service profile
    # ------------------------------------------------------------------

    def update_profile(
        self,
        username: str,
        *,
        email: str | None = None,
        full_name: str | None = None,
        avatar_url: str | None = None,
        gender: str | None = None,
        phone_number: str | None = None,
        current_password: str | None = None,
        new_password: str | None = None,
    ) -> Account:
        """Apply the non-empty fields to the caller's own account.

        A password change requires the correct current password. A new email
        address is unverified until its owner follows the link sent to it.
        """
        account = self.accounts.find_by_username(username)
        if account is None:
            raise ValidationFailure("not_found", "User not found", status_code=404)

        email_changed = False
        if email and email != account.email:
            if self.accounts.exists_by_email(email):
                raise ValidationFailure("email_exists", "Email already exists", status_code=409)
            account.email = email
            account.email_verified = False
            email_changed = True
        if full_name is not None:
            account.full_name = full_name
        if gender is not None:
            account.gender = gender
        if avatar_url is not None:
            account.avatar_url = avatar_url
        if phone_number:
            account.phone_number = phone_number

        password_changed = False
        if current_password is not None and new_password:
            if not self.hasher.verify(current_password, account.hashed_password):
                logger.warning("Invalid current password provided for %s", username)
                raise ValidationFailure("invalid_current_password", "Current password is incorrect")
            self.check_password_strength(new_password)
            account.hashed_password = self.hasher.hash(new_password)
            password_changed = True

        try:
            saved = self.accounts.save(account)
        except IntegrityError as exc:
            raise ValidationFailure("conflict", "Email already exists", status_code=409) from exc
        logger.info("Profile updated for %s (password changed: %s)", username, password_changed)
        if email_changed:
            self.send_email_verification(saved)
        return saved

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def check_password_strength(self, password: str) -> None:
        if not password or not password.strip():
            raise ValidationFailure("password_required", "Password is required")
        if len(password) < self.min_password_length:
            raise ValidationFailure(
                "weak_password",
                f"Password must be at least {self.min_password_length} characters long",
            )

    @staticmethod
    def _notify(send, email: str, token: str) -> bool:
        # The notifier contract is never-raise; this guards third-party implementations.
        try:
            sent = send(email, token)
        except Exception:
            logger.exception("Notifier raised while sending to %s", redact_email(email))
            return False
        if not sent:
            logger.warning("Notification to %s was not delivered", redact_email(email))
        return bool(sent)
