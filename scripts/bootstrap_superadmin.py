#!/usr/bin/env python3
"""Create the first SuperAdmin account.

Registration is SuperAdmin-only, so a fresh deployment needs one account
created out of band.

Usage:
    SUPERADMIN_EMAIL=root@example.com SUPERADMIN_PASSWORD=Str0ngSecret! \
        python scripts/bootstrap_superadmin.py

    python scripts/bootstrap_superadmin.py --email root@example.com \
        --password Str0ngSecret! --name "Platform Owner"

Environment Variables:
    SUPERADMIN_EMAIL: Email for the account
    SUPERADMIN_PASSWORD: Password (8+ characters, leading capital letter)
    SUPERADMIN_NAME: Display name (default "Super Admin")
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> str | None:
    """Return an error message, or None when the password is acceptable."""
    from tenantguard.api.schemas import validate_password_strength

    try:
        validate_password_strength(password)
    except ValueError as exc:
        return str(exc)
    return None


async def bootstrap_superadmin(
    email: str, password: str, name: str, dry_run: bool = False
) -> dict:
    from tenantguard.service.auth import normalize_email
    from tenantguard.service.runtime import get_runtime
    from tenantguard.storage.models import Role

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == Role.SUPER_ADMIN:
            print(f"User {email} already exists as SuperAdmin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_superadmin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to SuperAdmin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, {"role": Role.SUPER_ADMIN})
        print(f"Promoted existing user {email} to SuperAdmin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create SuperAdmin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = await asyncio.to_thread(runtime.auth.hash_password, password)
    user = runtime.store.create_user(
        name,
        email,
        password_hash,
        role=Role.SUPER_ADMIN,
        tenant_id=None,
    )
    print(f"Created SuperAdmin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first TenantGuard SuperAdmin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPERADMIN_EMAIL"),
        help="Account email (or set SUPERADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPERADMIN_PASSWORD"),
        help="Account password (or set SUPERADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("SUPERADMIN_NAME", "Super Admin"),
        help="Display name (or set SUPERADMIN_NAME)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPERADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or SUPERADMIN_PASSWORD environment variable required")
        sys.exit(1)
    problem = validate_password(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_superadmin(args.email, args.password, args.name, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperAdmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
