#!/usr/bin/env python3
"""Move audit events older than the retention window into the monthly archive.

Usage:
    python scripts/archive_audit_log.py
    python scripts/archive_audit_log.py --retention-days 90

Intended to run from a scheduler (cron, systemd timer) once a day.

Environment Variables:
    AUDIT_RETENTION_DAYS: Default retention window (365)
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def archive(retention_days: int | None) -> int:
    from guardmon.service.runtime import get_runtime

    runtime = get_runtime()
    return runtime.audit.archive(retention_days)


def main():
    parser = argparse.ArgumentParser(
        description="Archive old Guard Monitoring audit events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Keep events newer than this many days (defaults to AUDIT_RETENTION_DAYS)",
    )
    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must not be negative")
        sys.exit(1)

    os.environ.setdefault("USE_MEMORY_CACHE", "true")

    try:
        moved = archive(args.retention_days)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Archived {moved} audit event(s).")


if __name__ == "__main__":
    main()
