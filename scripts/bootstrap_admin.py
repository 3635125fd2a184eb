#!/usr/bin/env python3
"""Create or promote the first super admin.

Usage:
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD='long enough pw' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email owner@example.com --password 'long enough pw'

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (8-128 characters)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    email: str, password: str, *, first_name: str, last_name: str, dry_run: bool = False
) -> dict:
    # Imported late so the env defaults below are in place before settings load
    from siteauth.service.runtime import get_runtime
    from siteauth.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)
    if existing is not None and existing.is_deleted and dry_run:
        return {"account_id": existing.id, "email": existing.email, "status": "deactivated"}
    if existing is not None and existing.role == Role.SUPER_ADMIN and not existing.is_deleted:
        if dry_run:
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.auth.bootstrap_super_admin(
            email, password, first_name=first_name, last_name=last_name
        )
        return {"account_id": existing.id, "email": existing.email, "status": "password_reset"}

    if dry_run:
        status = "would_promote" if existing else "would_create"
        return {"account_id": existing.id if existing else None, "email": email, "status": status}

    account = await runtime.auth.bootstrap_super_admin(
        email, password, first_name=first_name, last_name=last_name
    )
    return {
        "account_id": account.id,
        "email": account.email,
        "status": "promoted" if existing else "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for SiteAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Super")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or not 8 <= len(args.password) <= 128:
        print("Error: password must be 8-128 characters (--password or ADMIN_PASSWORD)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email.strip().lower(),
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
