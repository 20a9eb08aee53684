#!/usr/bin/env python3
"""
authcore -- operator CLI for the session-security core.

Works directly against DATABASE_URL; the API server does not need to be running.

Usage:
  python main.py create-user coach
  python main.py status 1
  python main.py unlock 1
  python main.py revoke-sessions 1 --reason security_revoke
  python main.py purge-revocations
  python main.py check-password
  python main.py check-secret --environment production

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential / revocation database.
  SECRET_KEY    Token signing key (see check-secret).
  See core/config.py for the full list.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import StoreUnavailable
from auth.lockout import LockoutTracker
from auth.models import Credential, RevocationReason
from auth.passwords import PasswordPolicy, hash_password
from auth.revocation import RevocationStore
from auth.store import CredentialStore, create_store_engine
from core.config import Settings, get_settings
from core.secret_policy import GENERATION_HINT, validate_secret


class _Stores:
    """The three collaborators every database subcommand needs."""

    def __init__(self, settings: Settings) -> None:
        engine = create_store_engine(settings.database_url, settings.store_timeout_seconds)
        self.credentials = CredentialStore(engine)
        self.revocations = RevocationStore(engine, token_ttl_seconds=settings.token_ttl_seconds)
        self.lockout = LockoutTracker(
            self.credentials,
            threshold=settings.lockout_threshold,
            duration_minutes=settings.lockout_duration_minutes,
            enabled=settings.lockout_enabled,
        )


def _read_password(supplied: Optional[str], confirm: bool = False) -> str:
    if supplied is not None:
        return supplied
    password = getpass.getpass("  Password: ")
    if confirm and getpass.getpass("  Confirm:  ") != password:
        print("  [!] Passwords do not match.")
        raise SystemExit(1)
    return password


def _print_rules(policy: PasswordPolicy, password: str) -> None:
    for rule, met in policy.requirements(password):
        print(f"  [{'x' if met else ' '}] {rule.message}")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_create_user(args: argparse.Namespace, settings: Settings) -> int:
    policy = PasswordPolicy(min_length=settings.password_min_length)
    password = _read_password(args.password, confirm=True)
    evaluation = policy.evaluate(password)
    if not evaluation.valid:
        print("  [!] Password rejected:")
        _print_rules(policy, password)
        return 1
    stores = _Stores(settings)
    try:
        credential_id = stores.credentials.create_credential(
            Credential(username=args.username, password_hash=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A credential named '{args.username}' already exists.")
        return 1
    print(f"  Created credential {credential_id} ({args.username}).")
    return 0


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    stores = _Stores(settings)
    credential = stores.credentials.get_by_id(args.credential_id)
    if credential is None:
        print(f"  [!] Credential {args.credential_id} not found.")
        return 1
    status = stores.lockout.check(credential)
    print(f"  Credential:      {credential.id} ({credential.username})")
    print(f"  Active:          {'yes' if credential.is_active else 'no'}")
    print(f"  Failed attempts: {credential.failed_login_attempts}")
    if status.is_locked:
        print(f"  Locked:          yes, {status.remaining_minutes} minute(s) left (until {status.locked_until.isoformat()})")
    else:
        print("  Locked:          no")
    watermark = stores.revocations.revoked_before(str(credential.id))
    if watermark is not None:
        print(f"  Sessions revoked before {watermark.isoformat()}")
    return 0


def cmd_unlock(args: argparse.Namespace, settings: Settings) -> int:
    stores = _Stores(settings)
    if not stores.lockout.unlock(args.credential_id, actor=f"cli:{getpass.getuser()}"):
        print(f"  [!] Credential {args.credential_id} not found.")
        return 1
    print(f"  Credential {args.credential_id} unlocked; failed attempts reset.")
    return 0


def cmd_revoke_sessions(args: argparse.Namespace, settings: Settings) -> int:
    stores = _Stores(settings)
    if stores.credentials.get_by_id(args.credential_id) is None:
        print(f"  [!] Credential {args.credential_id} not found.")
        return 1
    watermark = stores.revocations.revoke_all_for_subject(str(args.credential_id), RevocationReason(args.reason))
    print(f"  Tokens for credential {args.credential_id} issued before {watermark.isoformat()} are revoked.")
    return 0


def cmd_purge_revocations(args: argparse.Namespace, settings: Settings) -> int:
    stores = _Stores(settings)
    removed = stores.revocations.purge_expired()
    print(f"  Purged {removed} expired revocation row(s).")
    return 0


def cmd_check_password(args: argparse.Namespace, settings: Settings) -> int:
    policy = PasswordPolicy(min_length=settings.password_min_length)
    password = _read_password(args.password)
    _print_rules(policy, password)
    return 0 if policy.is_valid(password) else 1


def cmd_check_secret(args: argparse.Namespace, settings: Optional[Settings]) -> int:
    secret = args.value if args.value is not None else getpass.getpass("  Secret: ")
    report = validate_secret(secret, args.name, args.environment)
    for error in report.errors:
        print(f"  [!] {error}")
    for warning in report.warnings:
        print(f"  [~] {warning}")
    if report.valid and not report.warnings:
        print(f"  {args.name} looks strong.")
    if not report.valid:
        print(f"  {GENERATION_HINT}")
    return 0 if report.valid else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Operator tool for credentials, lockouts, and session revocation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user coach
  python main.py status 1
  python main.py unlock 1
  python main.py revoke-sessions 1 --reason security_revoke
  DATABASE_URL=sqlite:///auth.db python main.py purge-revocations
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a credential (password must satisfy the policy)")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("status", help="Show failed attempts, lock state, and revocation watermark")
    p.add_argument("credential_id", type=int)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("unlock", help="Clear a lockout and reset the failure counter")
    p.add_argument("credential_id", type=int)
    p.set_defaults(func=cmd_unlock)

    p = sub.add_parser("revoke-sessions", help="Invalidate every token issued to a credential so far")
    p.add_argument("credential_id", type=int)
    p.add_argument(
        "--reason",
        choices=[r.value for r in RevocationReason],
        default=RevocationReason.admin_revoke.value,
        help="Recorded revocation reason (default: admin_revoke)",
    )
    p.set_defaults(func=cmd_revoke_sessions)

    p = sub.add_parser("purge-revocations", help="Delete revocation rows that can no longer match a live token")
    p.set_defaults(func=cmd_purge_revocations)

    p = sub.add_parser("check-password", help="Evaluate a password against the policy")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.set_defaults(func=cmd_check_password)

    p = sub.add_parser("check-secret", help="Evaluate a signing secret's strength")
    p.add_argument("value", nargs="?", help="Secret to check (prompted for when omitted)")
    p.add_argument("--name", default="SECRET_KEY", help="Name used in messages (default: SECRET_KEY)")
    p.add_argument(
        "--environment",
        default="development",
        help="Evaluate as this ENVIRONMENT; production and staging are strict (default: development)",
    )
    p.set_defaults(func=cmd_check_secret)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    # check-secret must work even when the configured SECRET_KEY would make
    # Settings() refuse to load.
    settings = None if args.func is cmd_check_secret else get_settings()
    try:
        return args.func(args, settings)
    except StoreUnavailable as exc:
        print(f"  [!] Database unavailable: {exc}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
