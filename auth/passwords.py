"""
auth/passwords.py -- bcrypt password hashing and verification.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The cost factor is injected at construction (from Settings.bcrypt_rounds) so
tests can run with the minimum cost and production with the default 12.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt


class PasswordHasher:
    """Salted adaptive one-way hashing for low-entropy secrets.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("secret")
        hasher.verify("secret", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization: login runs verify() against this hash when the
        # username does not exist, so response time does not reveal existence.
        self.dummy_hash: str = self.hash("examport_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the plaintext with a fresh salt.

        bcrypt truncates input at 72 bytes; the API layer caps password length
        well below that.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if the plaintext matches the stored hash.

        A missing or malformed stored hash returns False rather than raising.
        """
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False
