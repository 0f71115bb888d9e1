"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore (the user directory) and TokenStore (secondary tokens) are the
repositories; _row_to_account / _row_to_token are the mappers. Service code
never touches SQL directly.

Transactions:
  Simple lookups open and close their own connection. Methods that take a
  `conn` argument are steps of a larger unit of work and run inside the
  caller's transaction (store.transaction()), so the token lifecycle can make
  invalidate-then-insert and claim-then-side-effect atomic.

  On SQLite the driver only opens a transaction at the first write, so every
  unit of work starts with a write (or a FOR UPDATE lock on PostgreSQL) to
  take the write lock before reading anything it depends on.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps:
  Stored as naive UTC DATETIME columns; converted to timezone-aware UTC at the
  mapper boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, Role, SecondaryToken, TokenPurpose

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.STUDENT.value),
    Column("full_name", String(255)),
    Column("avatar_url", Text),
    Column("gender", String(30)),
    Column("phone_number", String(50)),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
)

_tokens = Table(
    "secondary_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Index("ix_secondary_tokens_account_purpose", "account_id", "purpose"),
    Index("ix_secondary_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind the token writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create the engine shared by AccountStore and TokenStore and ensure the schema."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("timestamps passed to the store must be timezone-aware")
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    return value.replace(tzinfo=timezone.utc) if value is not None else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _EngineStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on exit, roll back on error."""
        with self.engine.begin() as conn:
            yield conn


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AccountStore(_EngineStore):
    """Repository for Account entities (the user directory).

    Uniqueness of username and email is enforced by UNIQUE constraints;
    save() raises sqlalchemy.exc.IntegrityError on a conflict so a concurrent
    registration that slipped past the exists_* pre-checks still fails.
    """

    def find_by_username(self, username: str) -> Account | None:
        """Exact, case-sensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_email(self, email: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: int, conn: Connection | None = None) -> Account | None:
        stmt = _accounts.select().where(_accounts.c.id == account_id)
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.engine.connect() as own:
                row = own.execute(stmt).fetchone()
        return _row_to_account(row) if row is not None else None

    def exists_by_username(self, username: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.username == username)
            ).scalar()
        return (count or 0) > 0

    def exists_by_email(self, email: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_accounts).where(_accounts.c.email == email)).scalar()
        return (count or 0) > 0

    def count(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return result or 0

    def save(self, account: Account) -> Account:
        """Insert a new account (id is None) or update an existing one.

        Returns the stored account with id and created_at populated.
        """
        values = {
            "username": account.username,
            "email": account.email,
            "hashed_password": account.hashed_password,
            "role": Role(account.role).value,
            "full_name": account.full_name,
            "avatar_url": account.avatar_url,
            "gender": account.gender,
            "phone_number": account.phone_number,
            "email_verified": account.email_verified,
        }
        with self.engine.begin() as conn:
            if account.id is None:
                created_at = account.created_at or _now()
                result = conn.execute(_accounts.insert().values(created_at=_to_db(created_at), **values))
                return replace(account, id=result.inserted_primary_key[0], created_at=created_at)
            conn.execute(_accounts.update().where(_accounts.c.id == account.id).values(**values))
        return account

    def lock(self, conn: Connection, account_id: int) -> bool:
        """Take a row lock on the account for the rest of conn's transaction.

        PostgreSQL honours FOR UPDATE; SQLite ignores it and relies on the
        database-level write lock taken by the first write of the transaction.
        Returns False if the account does not exist.
        """
        row = conn.execute(select(_accounts.c.id).where(_accounts.c.id == account_id).with_for_update()).fetchone()
        return row is not None

    def set_email_verified(self, conn: Connection, account_id: int) -> None:
        conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(email_verified=True))

    def set_password(self, conn: Connection, account_id: int, hashed_password: str) -> None:
        conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(hashed_password=hashed_password))


class TokenStore(_EngineStore):
    """Repository for SecondaryToken entities."""

    def save(self, conn: Connection, token: SecondaryToken) -> SecondaryToken:
        """Insert a token inside the caller's transaction. Returns it with id set."""
        result = conn.execute(
            _tokens.insert().values(
                token=token.token,
                account_id=token.account_id,
                purpose=TokenPurpose(token.purpose).value,
                created_at=_to_db(token.created_at),
                expires_at=_to_db(token.expires_at),
                used=token.used,
            )
        )
        return replace(token, id=result.inserted_primary_key[0])

    def find_by_token_and_purpose(
        self, token: str, purpose: TokenPurpose, conn: Connection | None = None
    ) -> SecondaryToken | None:
        """Look up a token by its string and purpose. A purpose mismatch is not found."""
        stmt = _tokens.select().where((_tokens.c.token == token) & (_tokens.c.purpose == TokenPurpose(purpose).value))
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.engine.connect() as own:
                row = own.execute(stmt).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_for_account(self, account_id: int, purpose: TokenPurpose | None = None) -> list[SecondaryToken]:
        """Return all tokens owned by an account (oldest first)."""
        stmt = _tokens.select().where(_tokens.c.account_id == account_id)
        if purpose is not None:
            stmt = stmt.where(_tokens.c.purpose == TokenPurpose(purpose).value)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_tokens.c.id)).fetchall()
        return [_row_to_token(r) for r in rows]

    def mark_all_user_tokens_used(
        self,
        conn: Connection,
        account_id: int,
        purpose: TokenPurpose,
        exclude_id: int | None = None,
    ) -> int:
        """Flip used=True on every unused token of this purpose owned by the account.

        Returns the number of tokens invalidated.
        """
        condition = (
            (_tokens.c.account_id == account_id)
            & (_tokens.c.purpose == TokenPurpose(purpose).value)
            & (_tokens.c.used.is_(False))
        )
        if exclude_id is not None:
            condition = condition & (_tokens.c.id != exclude_id)
        result = conn.execute(_tokens.update().where(condition).values(used=True))
        return result.rowcount

    def claim(self, conn: Connection, token_id: int, now: datetime) -> bool:
        """Atomically flip used False -> True if the token is still valid at `now`.

        This is the compare-and-set that decides the single winner among
        concurrent consumers. Returns True only for the caller that flipped it.
        """
        result = conn.execute(
            _tokens.update()
            .where((_tokens.c.id == token_id) & (_tokens.c.used.is_(False)) & (_tokens.c.expires_at > _to_db(now)))
            .values(used=True)
        )
        return result.rowcount == 1

    def delete_expired(self, now: datetime) -> int:
        """Delete every token whose expiry is at or before `now`. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= _to_db(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        full_name=row.full_name,
        avatar_url=row.avatar_url,
        gender=row.gender,
        phone_number=row.phone_number,
        email_verified=bool(row.email_verified),
        created_at=_from_db(row.created_at),
    )


def _row_to_token(row) -> SecondaryToken:
    return SecondaryToken(
        id=row.id,
        token=row.token,
        account_id=row.account_id,
        purpose=TokenPurpose(row.purpose),
        created_at=_from_db(row.created_at),
        expires_at=_from_db(row.expires_at),
        used=bool(row.used),
    )
