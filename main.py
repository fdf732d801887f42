#!/usr/bin/env python3
"""
TrustGate -- operator CLI for roles, permissions and threat signals.

Usage:
  python main.py permission create proj-read project read --name "Read projects"
  python main.py permission create proj-123 project write --conditions '{"projectId": "123"}'
  python main.py role create developer --name Developer --permission proj-read --inherit viewer
  python main.py role assign user-1 developer
  python main.py role unassign user-1 developer
  python main.py check user-1 project read --context '{"projectId": "123"}'
  python main.py ip flag 203.0.113.7
  python main.py login-risk alice@example.com 203.0.113.7 --user-agent "Mozilla/5.0"
  python main.py events --limit 20

Environment variables:
  DATABASE_URL      SQLAlchemy URL of the credential store (overridden by --db).
  SECRET_KEY        HMAC key, at least 32 characters (required unless DEBUG=true).
  ENCRYPTION_KEY    Fernet key (required unless DEBUG=true).
"""

import argparse
import json
import logging
import sys
from typing import Optional

from core.config import get_settings
from core.errors import TrustGateError
from security.models import Permission, Role
from security.services import SecurityServices, build_services
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.cli")


def _json_object(value: str) -> dict:
    """argparse type: a JSON object given on the command line."""
    try:
        parsed = json.loads(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not valid JSON: {exc}") from None
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trustgate",
        description="Manage TrustGate roles and permissions and inspect threat signals.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    # permission
    perm = sub.add_parser("permission", help="Manage permissions")
    perm_sub = perm.add_subparsers(dest="action", metavar="ACTION")
    perm_create = perm_sub.add_parser("create", help="Create or replace a permission")
    perm_create.add_argument("id")
    perm_create.add_argument("resource")
    perm_create.add_argument("perm_action", metavar="action")
    perm_create.add_argument("--name", default="")
    perm_create.add_argument(
        "--conditions",
        type=_json_object,
        default=None,
        metavar="JSON",
        help='Context fields that must match exactly, e.g. \'{"projectId": "123"}\'',
    )

    # role
    role = sub.add_parser("role", help="Manage roles and assignments")
    role_sub = role.add_subparsers(dest="action", metavar="ACTION")
    role_create = role_sub.add_parser("create", help="Create or replace a role")
    role_create.add_argument("id")
    role_create.add_argument("--name", default="")
    role_create.add_argument("--permission", action="append", default=[], metavar="PERMISSION_ID")
    role_create.add_argument("--inherit", action="append", default=[], metavar="ROLE_ID")
    for name, help_text in (("assign", "Assign a role to a user"), ("unassign", "Remove a role from a user")):
        p = role_sub.add_parser(name, help=help_text)
        p.add_argument("user_id")
        p.add_argument("role_id")

    # check
    check = sub.add_parser("check", help="Evaluate a permission check (exit 0 = allow, 1 = deny)")
    check.add_argument("user_id")
    check.add_argument("resource")
    check.add_argument("check_action", metavar="action")
    check.add_argument("--context", type=_json_object, default=None, metavar="JSON")

    # ip
    ip = sub.add_parser("ip", help="Manage the suspicious IP list")
    ip.add_argument("ip_action", choices=["flag", "unflag"])
    ip.add_argument("address")

    # login-risk
    risk = sub.add_parser("login-risk", help="Score a login attempt (counts as an attempt)")
    risk.add_argument("email")
    risk.add_argument("address", metavar="ip")
    risk.add_argument("--user-agent", default="", metavar="UA")

    # events
    events = sub.add_parser("events", help="Show recent security events, newest first")
    events.add_argument("--limit", type=int, default=20)
    events.add_argument("--json", action="store_true", help="Output one JSON object per line")

    return parser


def _open_services(db_url: Optional[str]) -> SecurityServices:
    settings = get_settings()
    store = CredentialStore(db_url) if db_url else None
    return build_services(settings, store=store)


def _run(args: argparse.Namespace, services: SecurityServices) -> int:
    if args.command == "permission":
        permission = Permission(
            id=args.id,
            resource=args.resource,
            action=args.perm_action,
            name=args.name,
            conditions=args.conditions,
        )
        services.rbac.create_permission(permission)
        print(f"  Permission {permission.id}: {permission.resource}:{permission.action}")
        return 0

    if args.command == "role":
        if args.action == "create":
            role = Role(id=args.id, name=args.name or args.id, permissions=args.permission, inherit_from=args.inherit)
            services.rbac.create_role(role)
            print(f"  Role {role.id}: {len(role.permissions)} permission(s), inherits {role.inherit_from or 'nothing'}")
        elif args.action == "assign":
            added = services.rbac.assign_role(args.user_id, args.role_id)
            print(f"  {args.user_id} <- {args.role_id}" + ("" if added else " (already assigned)"))
        else:
            if not services.rbac.unassign_role(args.user_id, args.role_id):
                print(f"  [!] {args.user_id} does not have role {args.role_id}.")
                return 1
            print(f"  {args.user_id} -/- {args.role_id}")
        return 0

    if args.command == "check":
        allowed = services.rbac.has_permission(args.user_id, args.resource, args.check_action, args.context)
        print("ALLOW" if allowed else "DENY")
        return 0 if allowed else 1

    if args.command == "ip":
        if args.ip_action == "flag":
            changed = services.threats.flag_ip(args.address)
        else:
            changed = services.threats.unflag_ip(args.address)
        print(f"  {args.address}: {args.ip_action}ged" + ("" if changed else " (no change)"))
        return 0

    if args.command == "login-risk":
        assessment = services.threats.analyze_login_attempt(args.email, args.address, args.user_agent)
        print(f"  Risk score: {assessment.risk_score}/100{'  BLOCKED' if assessment.blocked else ''}")
        for reason in assessment.reasons:
            print(f"    - {reason}")
        return 1 if assessment.blocked else 0

    if args.command == "events":
        for event in services.events.recent(args.limit):
            if args.json:
                print(event.to_json())
            else:
                who = event.user_id or event.ip_address
                print(f"  {event.timestamp}  {event.severity:<8} {event.type:<17} {who}  {event.details}")
        return 0

    return 2


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not args.command or (args.command in ("permission", "role") and not args.action):
        parser.print_help()
        return 2

    try:
        services = _open_services(args.db)
    except (TrustGateError, ValueError) as exc:
        print(f"  [!] Could not start: {exc}")
        return 2

    try:
        return _run(args, services)
    except TrustGateError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"  [!] {exc}")
        return 2
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
