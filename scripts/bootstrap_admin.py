#!/usr/bin/env python3
"""Seed the permission catalog, default roles and the first administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

Running it again is safe: only missing permissions, roles and the user are created,
and SuperAdmin is granted any permission added since the last run.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap(email: str, password: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime
    from authcore.service.seed import ensure_super_admin, seed_catalog

    runtime = get_runtime()
    report = seed_catalog(runtime.store, dry_run=dry_run)
    prefix = "[DRY RUN] Would seed" if dry_run else "Seeded"
    print(f"{prefix} {len(report.permissions_created)} permission(s)")
    for role_name in report.roles_created:
        print(f"{prefix} role {role_name}")
    if report.super_admin_topped_up:
        print(f"{prefix} SuperAdmin grants: {', '.join(report.super_admin_topped_up)}")

    if dry_run and report.roles_created:
        existing = runtime.store.get_user_by_email(email)
        status = "exists" if existing else "dry_run"
        return {"user_id": existing.id if existing else None, "email": email, "status": status}
    return ensure_super_admin(runtime.store, runtime.users, email, password, dry_run=dry_run)


def main():
    parser = argparse.ArgumentParser(
        description="Seed roles, permissions and the first administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authcore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap(args.email.strip().lower(), args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print(f"\nNo user changes needed - {result['email']} already exists.")
    elif result["status"] == "dry_run":
        print(f"\n[DRY RUN] Would create administrator: {result['email']}")


if __name__ == "__main__":
    main()
