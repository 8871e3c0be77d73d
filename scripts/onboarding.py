"""Operator commands for the passkey onboarding service.

Works against the same database and Keycloak realm as the web app, so
DATABASE_URL must point at the shared store.
"""
from __future__ import annotations
import argparse
import datetime
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from passkey_onboarding.config import load_settings
from passkey_onboarding.core import audit
from passkey_onboarding.core.container import OnboardingServices, build_services
from passkey_onboarding.core.errors import OnboardingError


def _services_from_env(parser: argparse.ArgumentParser) -> OnboardingServices:
    if not os.environ.get("DATABASE_URL"):
        parser.error("DATABASE_URL is required (in-memory stores are private to the web process)")
    return build_services(load_settings())


def main(argv: Optional[Sequence[str]] = None, services: Optional[OnboardingServices] = None) -> int:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Passkey onboarding operator helper")
    parser.add_argument("--operator", default="cli",
                        help="Operator identifier for audit logs (default: cli)")

    sub = parser.add_subparsers(dest="cmd")

    sp = sub.add_parser("purge-pending", help="Delete registrations that never completed")
    sp.add_argument("--older-than-minutes", type=int, default=60)

    sd = sub.add_parser("delete-user", help="Delete a user and its Keycloak account")
    sd.add_argument("--user-id", required=True)

    sub.add_parser("verify-audit", help="Check audit log signatures")

    args = parser.parse_args(argv)

    if not args.cmd:
        parser.print_help()
        return 0

    if args.cmd == "verify-audit":
        total, valid = audit.verify_audit_log()
        print(f"Audit log: {valid}/{total} events with valid signatures")
        return 0 if total == valid else 1

    if services is None:
        services = _services_from_env(parser)

    if args.cmd == "purge-pending":
        if args.older_than_minutes < 0:
            parser.error("--older-than-minutes must not be negative")
        purged = services.registration.purge_abandoned(
            datetime.timedelta(minutes=args.older_than_minutes),
            operator=args.operator,
        )
        for username in purged:
            print(f"[purge-pending] Removed pending registration '{username}'")
        print(f"[purge-pending] {len(purged)} registration(s) purged")
        return 0

    if args.cmd == "delete-user":
        try:
            summary = services.registration.delete_user(args.user_id, operator=args.operator)
        except OnboardingError as e:
            print(f"[delete-user] Error: {e.detail}", file=sys.stderr)
            return 1
        print(
            f"[delete-user] Deleted '{summary['username']}' "
            f"(identity_deleted={summary['identityDeleted']}, credentials={summary['credentialsDeleted']})"
        )
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
