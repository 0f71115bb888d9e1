#!/usr/bin/env python3
"""
ExamPort -- account administration from the command line.

Usage:
  python main.py create-user admin admin@example.com --role admin
  python main.py create-user alice alice@example.com --verified
  python main.py cleanup-tokens

create-user prompts for the password (never pass it as an argument) and
skips email verification for staff bootstrap when --verified is given.
cleanup-tokens runs the expired-token sweep once, e.g. from cron when the
API's background sweep is not running.

Reads the same environment/.env settings as the API (DATABASE_URL, SECRET_KEY...).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.lifecycle import TokenLifecycleManager
from auth.models import Account, Role
from auth.passwords import PasswordHasher
from auth.store import AccountStore, TokenStore, create_store_engine
from core.config import get_settings


def _create_user(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = create_store_engine(settings.database_url)
    accounts = AccountStore(engine)
    try:
        if accounts.exists_by_username(args.username):
            print(f"  [!] Username '{args.username}' already exists.")
            return 1
        if accounts.exists_by_email(args.email):
            print(f"  [!] Email '{args.email}' already exists.")
            return 1

        password = getpass.getpass("Password: ")
        if len(password) < settings.min_password_length:
            print(f"  [!] Password must be at least {settings.min_password_length} characters long.")
            return 1
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1

        hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
        try:
            account = accounts.save(
                Account(
                    username=args.username,
                    email=args.email,
                    hashed_password=hasher.hash(password),
                    role=Role(args.role),
                    full_name=args.full_name,
                    email_verified=args.verified,
                )
            )
        except IntegrityError:
            print("  [!] Username or email already exists.")
            return 1
        print(f"  Created {account.role.value} '{account.username}' (id={account.id}).")
        return 0
    finally:
        engine.dispose()


def _cleanup_tokens(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = create_store_engine(settings.database_url)
    try:
        accounts = AccountStore(engine)
        lifecycle = TokenLifecycleManager(accounts, TokenStore(engine), PasswordHasher(rounds=settings.bcrypt_rounds))
        removed = lifecycle.cleanup_expired()
    finally:
        engine.dispose()
    print(f"  Removed {removed} expired token(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="examport",
        description="ExamPort account administration.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account (prompts for the password).")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.STUDENT.value)
    create.add_argument("--full-name", default=None)
    create.add_argument("--verified", action="store_true", help="Mark the email as already verified.")
    create.set_defaults(func=_create_user)

    cleanup = sub.add_parser("cleanup-tokens", help="Delete expired email/password-reset tokens.")
    cleanup.set_defaults(func=_cleanup_tokens)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
