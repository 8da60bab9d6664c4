#!/usr/bin/env python3
"""
Utility script to drop test databases left behind by interrupted runs.

Every database whose name starts with ``test_`` on the server behind
DATABASE_URL is dropped, after its open connections are terminated.

Usage:
    python scripts/cleanup_test_databases.py [--dry-run] [--database-url URL]
"""

import sys
import asyncio
import argparse
from pathlib import Path
from typing import List

import asyncpg

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from testbed.config.config_manager import ConfigManager
from testbed.database.lifecycle_manager import extract_base_url


async def list_test_databases(conn: asyncpg.Connection, prefix: str = 'test_') -> List[str]:
    """Names of the databases that look like test databases."""
    # Escape LIKE wildcards in the prefix
    pattern = prefix.replace('\\', '\\\\').replace('_', '\\_').replace('%', '\\%') + '%'
    rows = await conn.fetch(
        "SELECT datname FROM pg_database WHERE datname LIKE $1 AND NOT datistemplate ORDER BY datname",
        pattern
    )
    return [row['datname'] for row in rows]


async def cleanup_test_databases(database_url: str, admin_database: str, dry_run: bool = False) -> int:
    """
    Drop every orphaned test database.

    Returns:
        Number of databases dropped (or that would be dropped on a dry run)
    """
    admin_url = f"{extract_base_url(database_url)}/{admin_database}"
    conn = await asyncpg.connect(admin_url)

    try:
        names = await list_test_databases(conn)
        print(f"🧹 Found {len(names)} test database(s)")

        dropped = 0
        for name in names:
            if dry_run:
                print(f"  [DRY RUN] Would drop database: {name}")
                dropped += 1
                continue

            try:
                print(f"  Dropping database: {name}")
                await conn.execute(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = $1 AND pid <> pg_backend_pid()",
                    name
                )
                await conn.execute(f'DROP DATABASE IF EXISTS "{name}"')
                dropped += 1
            except asyncpg.PostgresError as e:
                print(f"    ⚠️  Failed to drop {name}: {e}")

        return dropped

    finally:
        await conn.close()


def main():
    parser = argparse.ArgumentParser(
        description="Drop orphaned test databases (names starting with test_)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be dropped without actually dropping anything"
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)"
    )
    args = parser.parse_args()

    config = ConfigManager()
    database_url = args.database_url or config.database_url

    try:
        dropped = asyncio.run(
            cleanup_test_databases(database_url, config.admin_database, dry_run=args.dry_run)
        )
    except KeyboardInterrupt:
        print("\n\n⚠️  Cleanup interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n❌ Unexpected error: {e}")
        sys.exit(1)

    print("\n✅ Cleanup complete!")
    if args.dry_run:
        print(f"  {dropped} database(s) would be dropped. Run without --dry-run to drop them.")
    else:
        print(f"  Databases dropped: {dropped}")


if __name__ == "__main__":
    main()
