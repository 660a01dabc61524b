#!/usr/bin/env python3
"""Operate on refresh sessions outside the request path.

Usage:
    # Delete refresh sessions whose expiry has passed:
    python scripts/manage_sessions.py purge-expired

    # Sign a user out of every device:
    python scripts/manage_sessions.py revoke-user --email user@example.com

    # Deactivate an account (also deletes all of its sessions):
    python scripts/manage_sessions.py deactivate --email user@example.com --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET / JWT_REFRESH_SECRET: required, as for the API server
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_expired(runtime, dry_run: bool = False) -> dict:
    if dry_run:
        print("[DRY RUN] Would delete expired refresh sessions")
        return {"status": "dry_run", "deleted": 0}
    deleted = runtime.store.purge_expired_sessions()
    print(f"Deleted {deleted} expired refresh session(s)")
    return {"status": "purged", "deleted": deleted}


def revoke_user(runtime, email: str, dry_run: bool = False) -> dict:
    user = runtime.store.get_user_by_email(email)
    if user is None:
        print(f"No user with email {email}")
        return {"status": "not_found", "user_id": None, "deleted": 0}
    if dry_run:
        count = runtime.store.count_sessions_for_user(user.id)
        print(f"[DRY RUN] Would delete {count} session(s) for {email} (id: {user.id})")
        return {"status": "dry_run", "user_id": user.id, "deleted": 0}
    deleted = runtime.store.delete_all_sessions_for_user(user.id)
    print(f"Deleted {deleted} session(s) for {email} (id: {user.id})")
    return {"status": "revoked", "user_id": user.id, "deleted": deleted}


async def deactivate(runtime, email: str, dry_run: bool = False) -> dict:
    user = runtime.store.get_user_by_email(email)
    if user is None:
        print(f"No user with email {email}")
        return {"status": "not_found", "user_id": None, "deleted": 0}
    if not user.is_active:
        print(f"User {email} is already deactivated")
        return {"status": "already_inactive", "user_id": user.id, "deleted": 0}
    if dry_run:
        print(f"[DRY RUN] Would deactivate {email} (id: {user.id})")
        return {"status": "dry_run", "user_id": user.id, "deleted": 0}
    deleted = (await runtime.auth.deactivate_user(user.id)).unwrap()
    print(f"Deactivated {email} and deleted {deleted} session(s)")
    return {"status": "deactivated", "user_id": user.id, "deleted": deleted}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Manage refresh sessions for the auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("purge-expired", help="Delete expired refresh sessions")
    for name, help_text in (
        ("revoke-user", "Delete every refresh session of a user"),
        ("deactivate", "Deactivate a user and delete their sessions"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--email",
            default=os.environ.get("TARGET_EMAIL"),
            help="Account email (or set TARGET_EMAIL env var)",
        )

    args = parser.parse_args(argv)

    if args.command != "purge-expired" and not args.email:
        print("Error: --email or TARGET_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; sessions live in Postgres")
        sys.exit(1)

    # Import here to avoid loading config before env vars are checked
    from algoauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if args.command == "purge-expired":
            purge_expired(runtime, args.dry_run)
        elif args.command == "revoke-user":
            revoke_user(runtime, args.email, args.dry_run)
        else:
            asyncio.run(deactivate(runtime, args.email, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
