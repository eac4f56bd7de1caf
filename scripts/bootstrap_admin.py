#!/usr/bin/env python3
"""Bootstrap the first admin identity.

Accounts are provisioned by administrators only, so a fresh deployment
needs one admin created out of band.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=lab-admin ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username lab-admin --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin identity
    ADMIN_PASSWORD: Password for the admin identity
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str, password: str, company_name: Optional[str] = None, dry_run: bool = False
) -> dict:
    """Create the admin identity unless the username is already taken.

    Returns:
        dict with identity_id, username, and status
    """
    # Import here to avoid loading config before env vars are set
    from labrecords.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_identity_by_username(username)
    if existing:
        status = "already_admin" if existing.is_admin else "exists_not_admin"
        print(f"Identity {username} already exists (id: {existing.id}, role: {existing.role})")
        return {"identity_id": existing.id, "username": username, "status": status}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {username}")
        return {"identity_id": None, "username": username, "status": "dry_run"}

    identity = runtime.auth.provision(
        username, password, role="admin", company_name=company_name
    )
    print(f"Created admin identity: {username} (id: {identity.id})")
    return {"identity_id": identity.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for Lab Records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--company", default=None, help="Company name shown on reports")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("DATA_ROOT", "/tmp/labrecords-bootstrap")
        print("Note: Using in-memory store persisted under DATA_ROOT")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.username, args.password, args.company, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")
    elif result["status"] == "exists_not_admin":
        print("Error: username is taken by a standard identity")
        sys.exit(1)


if __name__ == "__main__":
    main()
