#!/usr/bin/env python3
"""Create the Switchboard tables in a PostgreSQL database.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://switchboard@localhost/switchboard python scripts/init_db.py

    # Or with command line args:
    python scripts/init_db.py --database-url postgresql://switchboard@localhost/switchboard

    # Only report whether the schema is present:
    python scripts/init_db.py --check

Environment Variables:
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


def init_db(database_url: str, check_only: bool = False) -> dict:
    """Apply the schema, or only verify it when ``check_only`` is set.

    Returns:
        dict with status ('created', 'present' or 'missing')
    """
    # Import here to avoid loading config before env vars are set
    from switchboard.storage.postgres import PostgresStore

    store = PostgresStore(database_url, verify_schema=False)
    try:
        if check_only:
            try:
                store.check_schema()
            except RuntimeError as exc:
                print(f"Schema check failed: {exc}")
                return {"status": "missing", "error": str(exc)}
            return {"status": "present"}
        store.apply_schema()
        store.check_schema()
        return {"status": "created"}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create the Switchboard database schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Verify the tables exist without changing anything",
    )

    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        result = init_db(args.database_url, check_only=args.check)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("Schema applied; all required tables are present.")
    elif result["status"] == "present":
        print("All required tables are present.")
    else:
        sys.exit(2)


if __name__ == "__main__":
    main()
