#!/usr/bin/env python3
"""
restauth -- Operator CLI for the auth database.

Usage:
  python main.py init-db
  python main.py seed
  python main.py create-user --email ops@example.com --password 'change-me-now' --role admin

Environment variables:
  DATABASE_URL   SQLAlchemy URL (default: sqlite:///restauth.db)
  BCRYPT_ROUNDS  bcrypt cost for created users (default: 12)
  DEBUG          true allows running without JWT_SECRET
"""

import argparse
import sys

from auth.errors import EmailAlreadyExists
from auth.models import Role, User
from auth.store import SQLAuthStore
from auth.tokens import hash_password
from core.config import get_settings

DEV_PASSWORD = "password123"

# (email, first name, last name, role) for local development.
SEED_USERS: tuple[tuple[str, str, str, Role], ...] = (
    ("owner@example.com", "Owner", "User", Role.owner),
    ("admin@example.com", "Admin", "User", Role.admin),
    ("system@example.com", "System", "User", Role.system),
    ("customer@example.com", "Customer", "User", Role.customer),
)


def _open_store(url: str | None) -> SQLAuthStore:
    return SQLAuthStore(url or get_settings().database_url)


def cmd_init_db(args: argparse.Namespace) -> int:
    store = _open_store(args.database_url)
    store.close()
    print("  Schema and roles are in place.")
    return 0


def seed_users(store: SQLAuthStore, rounds: int) -> list[str]:
    """Create the development accounts that are missing. Returns the emails created."""
    created: list[str] = []
    for email, first, last, role in SEED_USERS:
        if store.get_user_by_email(email) is not None:
            continue
        store.create_user(
            User(
                email=email,
                first_name=first,
                last_name=last,
                role=role.value,
                password_hash=hash_password(DEV_PASSWORD, rounds),
            )
        )
        created.append(email)
    return created


def cmd_seed(args: argparse.Namespace) -> int:
    settings = get_settings()
    if settings.is_production:
        print("  [!] Refusing to seed development users with ENV=production.")
        return 1
    store = _open_store(args.database_url)
    try:
        created = seed_users(store, settings.bcrypt_rounds)
    finally:
        store.close()
    if created:
        for email in created:
            print(f"  created {email} (password: {DEV_PASSWORD})")
    else:
        print("  All seed users already exist.")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    if len(args.password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if len(args.password.encode("utf-8")) > 72:
        print("  [!] Password must be at most 72 bytes (UTF-8).")
        return 1
    store = _open_store(args.database_url)
    try:
        user_id = store.create_user(
            User(
                email=args.email,
                first_name=args.first_name,
                last_name=args.last_name,
                role=args.role,
                password_hash=hash_password(args.password, get_settings().bcrypt_rounds),
            )
        )
    except EmailAlreadyExists:
        print(f"  [!] A user with email {args.email} already exists.")
        return 1
    finally:
        store.close()
    print(f"  created {args.email} ({args.role}) id={user_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="restauth",
        description="Manage the auth database: schema, development seed data, users.",
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and the fixed roles").set_defaults(func=cmd_init_db)
    sub.add_parser("seed", help=f"Create development users (password: {DEV_PASSWORD})").set_defaults(func=cmd_seed)

    create = sub.add_parser("create-user", help="Create one user")
    create.add_argument("--email", required=True)
    create.add_argument("--password", required=True)
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.customer.value)
    create.add_argument("--first-name", default="")
    create.add_argument("--last-name", default="")
    create.set_defaults(func=cmd_create_user)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
