#!/usr/bin/env python3
"""
devicegate -- Administration CLI for the access directory.

Seeds the roles, protected operations and grants the API resolves against,
and bootstraps the first super_admin account. The API itself never creates
operations implicitly; they are registered here or through POST /api/v1/access/grants.

Usage:
  python main.py init
  python main.py add-operation POST /posts
  python main.py add-operation DELETE /posts --inactive
  python main.py grant editor POST /posts
  python main.py create-admin admin@example.com
  python main.py --db sqlite:///other.db init

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the devicegate database (default: ./devicegate.db)
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from auth.directory import AccessDirectory
from auth.models import SUPER_ADMIN_ROLE, Role, UserRecord
from auth.passwords import BcryptPasswordHasher

_MIN_PASSWORD_LENGTH = 8

# Operations the API itself guards with require_operation_access.
_BUILTIN_OPERATIONS: tuple[tuple[str, str], ...] = (("POST", "/api/v1/access/grants"),)


def _database_url(args: argparse.Namespace) -> str:
    if args.db:
        return args.db
    # Settings validates token secrets; only needed when --db is absent.
    from core.config import get_settings

    return get_settings().database_url


def cmd_init(directory: AccessDirectory, args: argparse.Namespace) -> int:
    roles = directory.ensure_builtin_roles()
    for slug, role in roles.items():
        marker = " (default)" if role.is_default else ""
        print(f"  role {slug:<12} id={role.id}{marker}")
    for method, path in _BUILTIN_OPERATIONS:
        operation = directory.ensure_operation(method, path)
        print(f"  operation {operation.method} {operation.path} id={operation.id}")
    print("  Directory initialized.")
    return 0


def cmd_add_operation(directory: AccessDirectory, args: argparse.Namespace) -> int:
    operation = directory.ensure_operation(args.method, args.path)
    if args.inactive and operation.active:
        directory.set_operation_active(operation.id, False)
        operation.active = False
    state = "active" if operation.active else "inactive"
    print(f"  operation {operation.method} {operation.path} id={operation.id} ({state})")
    return 0


def cmd_grant(directory: AccessDirectory, args: argparse.Namespace) -> int:
    role = directory.find_by_slug(args.role)
    if role is None:
        role = directory.create_role(Role(slug=args.role))
        print(f"  Created role {args.role!r}.")
    operation = directory.ensure_operation(args.method, args.path)
    if directory.grant(role.id, operation.id):
        print(f"  Granted {role.slug} -> {operation.method} {operation.path}")
    else:
        print(f"  {role.slug} already holds {operation.method} {operation.path}")
    return 0


def cmd_create_admin(directory: AccessDirectory, args: argparse.Namespace) -> int:
    roles = directory.ensure_builtin_roles()
    admin_role = roles[SUPER_ADMIN_ROLE]

    existing = directory.find_by_email(args.email)
    if existing is not None:
        directory.attach_role(existing.id, admin_role.id)
        directory.update_fields(existing.id, email_verified=True, active=True)
        print(f"  Existing user {existing.email} promoted to {SUPER_ADMIN_ROLE}.")
        return 0

    password = getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.", file=sys.stderr)
        return 1
    if getpass.getpass("  Confirm password: ") != password:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1

    user = directory.create(
        UserRecord(
            email=args.email,
            password_hash=BcryptPasswordHasher().hash(password),
            email_verified=True,
            role_ids=[admin_role.id],
        )
    )
    if user is None:
        print(f"  [!] {args.email} was registered concurrently; run create-admin again to promote it.", file=sys.stderr)
        return 1
    print(f"  Created {SUPER_ADMIN_ROLE} {user.email} id={user.id}")
    return 0


_COMMANDS = {
    "init": cmd_init,
    "add-operation": cmd_add_operation,
    "grant": cmd_grant,
    "create-admin": cmd_create_admin,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devicegate",
        description="Manage roles, protected operations and grants.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init
  python main.py add-operation POST /posts
  python main.py grant editor POST /posts
  python main.py create-admin admin@example.com
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from settings)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init", help="Create the built-in roles and the grant-management operation")

    add_op = sub.add_parser("add-operation", help="Register a protected operation")
    add_op.add_argument("method", type=str.upper, help="HTTP method, e.g. POST")
    add_op.add_argument("path", help="Path template, e.g. /posts")
    add_op.add_argument("--inactive", action="store_true", help="Register the operation disabled")

    grant = sub.add_parser("grant", help="Allow a role to invoke an operation (creates both if missing)")
    grant.add_argument("role", help="Role slug, e.g. editor")
    grant.add_argument("method", type=str.upper, help="HTTP method, e.g. POST")
    grant.add_argument("path", help="Path template, e.g. /posts")

    admin = sub.add_parser("create-admin", help="Create a verified super_admin account (prompts for password)")
    admin.add_argument("email", help="Account email")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    directory = AccessDirectory(_database_url(args))
    try:
        return _COMMANDS[args.command](directory, args)
    finally:
        directory.close()


if __name__ == "__main__":
    sys.exit(main())
