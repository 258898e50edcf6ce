#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=harvest2024 ADMIN_NAME="Site Admin" \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password harvest2024

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: account details
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment defaults below apply to settings
    from agrigrow.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.auth.set_role(existing.id, "admin")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.signup(email, password, name)
    await runtime.auth.set_role(result.account.id, "admin")
    return {
        "account_id": result.account.id,
        "email": result.account.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for AgriGrow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD are required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using in-memory store (set DATABASE_URL for persistence)")

    from agrigrow.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        if exc.detail:
            for error in exc.detail.get("errors", []):
                print(f"  {error['field']}: {error['message']}")
        sys.exit(1)

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed - account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
