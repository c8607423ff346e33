#!/usr/bin/env python3
"""
EstateHub auth maintenance commands.

Usage:
  python main.py purge
  python main.py revoke-sessions alice@example.com
  python main.py --database-url sqlite:///./auth.db purge

The API server runs the purge on a timer (PURGE_INTERVAL_SECONDS); the purge
command runs one pass by hand, e.g. from cron when the timer is disabled.
revoke-sessions signs one account out of every device. Access tokens already
issued stay valid until they expire.

Environment variables:
  DATABASE_URL  Credential store location (same setting the API server reads).
"""

import argparse
import logging
from typing import Optional

from auth.errors import StoreError
from auth.store import CredentialStore
from core.config import get_settings

logger = logging.getLogger("estatehub.cli")


def _purge(store: CredentialStore) -> int:
    counts = store.purge_expired()
    print(f"  Purged {counts['sessions']} expired session(s) and {counts['reset_tokens']} reset token(s).")
    return 0


def _revoke_sessions(store: CredentialStore, email: str) -> int:
    user = store.find_user_by_email(email.strip().lower())
    if user is None:
        print(f"  [!] No account found for '{email}'.")
        return 1
    removed = store.clear_refresh_tokens(user.id)
    logger.info("Revoked %d sessions for user %s from the CLI", removed, user.id)
    print(f"  Revoked {removed} session(s) for {user.email}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="estatehub-auth",
        description="Maintenance commands for the EstateHub credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py revoke-sessions alice@example.com
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the credential store (default: DATABASE_URL setting)",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.add_parser("purge", help="Delete expired sessions and stale password reset tokens")
    revoke = commands.add_parser("revoke-sessions", help="Sign an account out of every device")
    revoke.add_argument("email", metavar="EMAIL", help="Email address of the account")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    store = CredentialStore(args.database_url or get_settings().database_url)
    try:
        if args.command == "purge":
            return _purge(store)
        return _revoke_sessions(store, args.email)
    except StoreError as e:
        print(f"  [!] Credential store error: {e}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
