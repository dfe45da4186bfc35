#!/usr/bin/env python3
"""
Coco Instruments -- account and database administration.

Usage:
  python main.py init-db
  python main.py sweep-tokens
  python main.py create-user ann@example.com "Ann Example"
  python main.py unlock-user ann@example.com
  python main.py deactivate-user ann@example.com

Environment variables (see core/config.py for the full list):
  DATABASE_URL  SQLAlchemy URL. Defaults to coco_instruments.db in the repo root.
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthCoreError
from auth.service import AuthService
from auth.throttle import RateLimitStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from storage.database import create_db_engine


def _service_call(settings: Settings, operation):
    """Run operation(service) on a fresh connection and dispose the engine afterwards."""
    engine = create_db_engine(settings.database_url)
    try:
        with engine.connect() as conn:
            service = AuthService.for_connection(conn, settings, TokenCodec(settings.secret_key), RateLimitStore())
            return operation(service)
    finally:
        engine.dispose()


def _read_password() -> str:
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return password


def cmd_init_db(settings: Settings, args: argparse.Namespace) -> None:
    create_db_engine(settings.database_url).dispose()
    print("  Schema ready.")


def cmd_sweep_tokens(settings: Settings, args: argparse.Namespace) -> None:
    removed = _service_call(settings, lambda service: service.sweep_expired_tokens())
    print(f"  Removed {removed} expired refresh token(s).")


def cmd_create_user(settings: Settings, args: argparse.Namespace) -> None:
    password = _read_password()
    user = _service_call(settings, lambda service: service.create_account(args.email, args.name, password))
    print(f"  Created user {user.id} ({user.email}).")


def cmd_unlock_user(settings: Settings, args: argparse.Namespace) -> None:
    user = _service_call(settings, lambda service: service.unlock_account(args.email))
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        sys.exit(1)
    print(f"  Unlocked user {user.id} ({user.email}).")


def cmd_deactivate_user(settings: Settings, args: argparse.Namespace) -> None:
    user = _service_call(settings, lambda service: service.deactivate_account(args.email))
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        sys.exit(1)
    print(f"  Deactivated user {user.id} ({user.email}); all refresh tokens revoked.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coco-instruments",
        description="Account and database administration for the Coco Instruments API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py create-user ann@example.com "Ann Example"
  DATABASE_URL=sqlite:////var/lib/coco/coco.db python main.py sweep-tokens
        """,
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    sub.add_parser("init-db", help="Create any missing tables").set_defaults(func=cmd_init_db)
    sub.add_parser("sweep-tokens", help="Delete expired refresh tokens").set_defaults(func=cmd_sweep_tokens)

    create = sub.add_parser("create-user", help="Create an account (password read from the terminal)")
    create.add_argument("email")
    create.add_argument("name")
    create.set_defaults(func=cmd_create_user)

    unlock = sub.add_parser("unlock-user", help="Clear failed-login lockout for an account")
    unlock.add_argument("email")
    unlock.set_defaults(func=cmd_unlock_user)

    deactivate = sub.add_parser("deactivate-user", help="Deactivate an account and revoke its sessions")
    deactivate.add_argument("email")
    deactivate.set_defaults(func=cmd_deactivate_user)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        args.func(get_settings(), args)
    except AuthCoreError as exc:
        print(f"  [!] {exc.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
