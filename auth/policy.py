"""
auth/policy.py -- Static route authorization table.

Each rule maps (HTTP method set, path pattern) to an access level:
  PUBLIC         -- anyone, authenticated or not
  AUTHENTICATED  -- any valid session credential
  frozenset[Role] -- a valid credential whose role is in the set

Rules are evaluated top to bottom; the first match wins. A path no rule
matches requires authentication. The table is expressed over the Role enum,
so adding a role means revisiting every role-set rule below.

Pattern syntax:
  *   one path segment (no slash)
  **  any remainder, including nothing ("/api/v1/auth/**" matches "/api/v1/auth")

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from auth.models import Identity, Role


class Access(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"


class Decision(str, Enum):
    ALLOW = "allow"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"


ANY_METHOD: frozenset[str] = frozenset()

PRIVILEGED: frozenset[Role] = frozenset({Role.ADMIN, Role.INSTRUCTOR})
ALL_ROLES: frozenset[Role] = frozenset(Role)


def _compile(pattern: str) -> re.Pattern[str]:
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("/**", i) and i + 3 == len(pattern):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


@dataclass(frozen=True)
class RouteRule:
    pattern: str
    access: Access | frozenset[Role]
    methods: frozenset[str] = ANY_METHOD
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _compile(self.pattern))
        object.__setattr__(self, "methods", frozenset(m.upper() for m in self.methods))

    def matches(self, method: str, path: str) -> bool:
        if self.methods and method.upper() not in self.methods:
            return False
        return self._regex.match(path) is not None


def rule(pattern: str, access: Access | frozenset[Role], *methods: str) -> RouteRule:
    return RouteRule(pattern=pattern, access=access, methods=frozenset(methods))


# Order matters: specific rules before the catch-alls beneath them.
DEFAULT_RULES: tuple[RouteRule, ...] = (
    rule("/**", Access.PUBLIC, "OPTIONS"),
    rule("/api/v1/health", Access.PUBLIC),
    # Registration, login, auth health, email verification, password reset.
    rule("/api/v1/auth/**", Access.PUBLIC),
    # Courses
    rule("/api/v1/courses/public", Access.PUBLIC, "GET"),
    rule("/api/v1/courses/create", PRIVILEGED, "POST"),
    rule("/api/v1/courses/**", Access.AUTHENTICATED),
    # Exams
    rule("/api/v1/exams/**", ALL_ROLES, "GET", "POST"),
    # Users
    rule("/api/v1/users/me", Access.AUTHENTICATED),
    # Enrollments and payments
    rule("/api/v1/enrollments/**", Access.AUTHENTICATED),
    rule("/api/v1/payments/**", Access.AUTHENTICATED),
    # Contact form submissions
    rule("/api/v1/contact", Access.PUBLIC, "POST"),
    # Email diagnostics
    rule("/api/v1/email/**", PRIVILEGED),
)


class RoutePolicy:
    """First-match-wins evaluation over an ordered rule table."""

    def __init__(self, rules: tuple[RouteRule, ...] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def access_for(self, method: str, path: str) -> Access | frozenset[Role]:
        for r in self.rules:
            if r.matches(method, path):
                return r.access
        return Access.AUTHENTICATED

    def evaluate(self, method: str, path: str, identity: Identity | None) -> Decision:
        access = self.access_for(method, path)
        if access is Access.PUBLIC:
            return Decision.ALLOW
        if identity is None:
            return Decision.UNAUTHORIZED
        if access is Access.AUTHENTICATED:
            return Decision.ALLOW
        return Decision.ALLOW if identity.role in access else Decision.FORBIDDEN
