#!/usr/bin/env python3
"""
SponsorLink identity -- operator CLI.

Self-registration always yields a sponsor account, so privileged accounts are
created and promoted from here, against the same database the API uses.

Usage:
  python main.py create-admin ops@example.com
  python main.py create-admin ops@example.com --name "Ops Team"
  python main.py set-role 42 organizer
  python main.py set-role ann@example.com admin

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the account database (see core/config.py).
  SECRET_KEY     Required unless DEBUG=true, same as for the API.

The password for create-admin is read from a prompt, never from argv, so it
does not end up in shell history.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.credentials import provision_account
from auth.errors import AuthError
from auth.models import Role
from auth.store import AccountStore
from core.config import get_settings


def _read_password() -> Optional[str]:
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_admin(store: AccountStore, email: str, password: str, name: Optional[str] = None) -> int:
    """Create an admin password account. Returns a process exit code."""
    settings = get_settings()
    try:
        account = provision_account(
            store,
            email,
            password,
            role=Role.ADMIN.value,
            name=name,
            min_length=settings.min_password_length,
        )
    except AuthError as exc:
        print(f"  [!] {exc.user_message()}")
        return 1
    print(f"  Admin account created (id={account.id}, email={account.email}).")
    return 0


def set_role(store: AccountStore, account: str, role: str) -> int:
    """Change the role of an account given by id or email. Returns a process exit code.

    Live sessions keep the role they were issued with; the change applies at
    the account's next login.
    """
    target = store.get_by_email(account) if "@" in account else store.get_by_id(account)
    if target is None:
        print(f"  [!] No account matches '{account}'.")
        return 1
    store.update_account(target.id, role=role)
    print(f"  {target.email}: {target.role} -> {role} (effective from next login).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sponsorlink-admin",
        description="Operator commands for the SponsorLink identity database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin ops@example.com
  python main.py set-role 42 organizer
  python main.py set-role ann@example.com admin
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create an admin account with a password")
    create.add_argument("email", help="Email address for the new admin")
    create.add_argument("--name", default=None, help="Display name")

    promote = sub.add_parser("set-role", help="Change an account's role")
    promote.add_argument("account", metavar="ACCOUNT", help="Account id or email")
    promote.add_argument(
        "role",
        choices=[r.value for r in Role],
        metavar="ROLE",
        help="sponsor, organizer, or admin",
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    try:
        store = AccountStore(get_settings().database_url)
    except AuthError as exc:
        print(f"  [!] {exc}")
        return 1

    try:
        if args.command == "create-admin":
            password = _read_password()
            if password is None:
                return 1
            return create_admin(store, args.email, password, name=args.name)
        return set_role(store, args.account, args.role)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
