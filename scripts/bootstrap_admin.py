#!/usr/bin/env python3
"""Bootstrap the administrator account on an empty account store.

Usage:
    # Default administrator (admin / ChangeMe2025!, must change on first login):
    python scripts/bootstrap_admin.py

    # Or with explicit credentials:
    python scripts/bootstrap_admin.py --username chief --password 'Str0ngPassword'

Environment Variables:
    ADMIN_USERNAME: Username for the administrator (defaults to DEFAULT_ADMIN_USERNAME)
    ADMIN_PASSWORD: Password for the administrator (defaults to DEFAULT_ADMIN_PASSWORD)
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str | None, password: str | None, dry_run: bool = False
) -> dict:
    """Create the administrator when no accounts exist.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from guardmon.service.runtime import get_runtime

    runtime = get_runtime()
    accounts = runtime.store.list_accounts()
    if accounts:
        admins = [a.username for a in accounts if a.is_admin]
        print(f"Store already has {len(accounts)} account(s); administrators: {', '.join(admins) or 'none'}")
        return {"user_id": None, "username": username, "status": "exists"}

    if dry_run:
        target = username or runtime.settings.default_admin_username
        print(f"[DRY RUN] Would create administrator: {target}")
        return {"user_id": None, "username": target, "status": "dry_run"}

    account = runtime.accounts.ensure_default_admin(username=username, password=password)
    print(f"Created administrator: {account.username} (id: {account.id})")
    return {"user_id": account.id, "username": account.username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the Guard Monitoring administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Administrator username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/guardmon-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Tokens are not issued here, so Redis is never needed
    os.environ.setdefault("USE_MEMORY_CACHE", "true")

    try:
        result = bootstrap_admin(args.username, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        print("  The password must be changed on first login.")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
