"""
testbed Migration Manager
Applies versioned SQL migrations to a test database, with version tracking
and rollback files. Also runnable as a command-line tool, which is how
test databases get migrated from a separate process.
"""

import os
import sys
import asyncio
import asyncpg
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional, Tuple
from datetime import datetime, timezone
import logging

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "database" / "migrations"
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class MigrationManager:
    """Manages database migrations with proper version control."""

    def __init__(self, database_url: str = "", migrations_dir: Optional[Path] = None):
        self.database_url = database_url or os.getenv('DATABASE_URL', '')
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR
        self.logger = logging.getLogger(__name__)

    def validate_environment(self) -> bool:
        """Validate that a database URL is available."""
        if not self.database_url:
            self.logger.error("DATABASE_URL environment variable is required")
            return False
        return True

    async def initialize_migrations_table(self, conn: asyncpg.Connection) -> bool:
        """Create the migrations table if it doesn't exist."""
        try:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    id SERIAL PRIMARY KEY,
                    version INTEGER NOT NULL UNIQUE,
                    name VARCHAR(255) NOT NULL,
                    applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    checksum VARCHAR(64)
                )
            """)
            return True
        except Exception as e:
            self.logger.error(f"Failed to create migrations table: {e}")
            return False

    async def get_applied_migrations(self, conn: asyncpg.Connection) -> List[int]:
        """Get list of already applied migration versions."""
        rows = await conn.fetch("SELECT version FROM migrations ORDER BY version")
        return [row['version'] for row in rows]

    def get_available_migrations(self) -> List[Tuple[int, str, Path]]:
        """Get list of available migration files, rollback files excluded."""
        migrations = []

        if not self.migrations_dir.exists():
            return migrations

        for file_path in self.migrations_dir.glob("*.sql"):
            if file_path.name.startswith((".", "__")) or file_path.stem.endswith("_rollback"):
                continue

            # e.g. 001_initial_schema.sql
            try:
                version_str = file_path.name.split('_')[0]
                version = int(version_str)
                name = file_path.stem.replace(f"{version_str}_", "", 1)
                migrations.append((version, name, file_path))
            except (ValueError, IndexError):
                self.logger.warning(f"Invalid migration filename format: {file_path.name}")
                continue

        return sorted(migrations, key=lambda x: x[0])

    async def apply_migration(self, conn: asyncpg.Connection, version: int, name: str, file_path: Path) -> bool:
        """Apply a single migration inside its own transaction."""
        try:
            sql_content = file_path.read_text(encoding='utf-8')

            if not sql_content.strip():
                self.logger.warning(f"Migration {version} ({name}) is empty, skipping")
                return True

            checksum = hashlib.sha256(sql_content.encode('utf-8')).hexdigest()

            async with conn.transaction():
                await conn.execute(sql_content)
                await conn.execute(
                    """
                    INSERT INTO migrations (version, name, applied_at, checksum)
                    VALUES ($1, $2, $3, $4)
                    """,
                    version, name, datetime.now(timezone.utc), checksum
                )

            self.logger.info(f"Applied migration {version}: {name}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to apply migration {version} ({name}): {e}")
            return False

    async def run_pending_migrations(self) -> bool:
        """Run all pending migrations."""
        if not self.validate_environment():
            return False

        try:
            conn = await asyncpg.connect(self.database_url)

            try:
                if not await self.initialize_migrations_table(conn):
                    return False

                applied_versions = await self.get_applied_migrations(conn)
                available_migrations = self.get_available_migrations()

                self.logger.info(f"Found {len(applied_versions)} applied migrations")
                self.logger.info(f"Found {len(available_migrations)} available migrations")

                success_count = 0
                for version, name, file_path in available_migrations:
                    if version in applied_versions:
                        self.logger.debug(f"Migration {version} already applied, skipping")
                        continue

                    self.logger.info(f"Applying migration {version}: {name}")
                    if not await self.apply_migration(conn, version, name, file_path):
                        return False
                    success_count += 1

                self.logger.info(f"Successfully applied {success_count} migrations")
                return True

            finally:
                await conn.close()

        except Exception as e:
            self.logger.error(f"Migration failed: {e}")
            return False

    async def rollback_migration(self, target_version: int) -> bool:
        """Rollback migrations down to (not including) a target version."""
        if not self.validate_environment():
            return False

        try:
            conn = await asyncpg.connect(self.database_url)

            try:
                applied_versions = await self.get_applied_migrations(conn)
                available_migrations = self.get_available_migrations()

                versions_to_rollback = [v for v in applied_versions if v > target_version]

                if not versions_to_rollback:
                    self.logger.info("No migrations to rollback")
                    return True

                for version in sorted(versions_to_rollback, reverse=True):
                    migration_info = next((m for m in available_migrations if m[0] == version), None)
                    if not migration_info:
                        self.logger.error(f"Cannot find migration file for version {version}")
                        return False

                    _, name, file_path = migration_info

                    # e.g. 001_initial_schema_rollback.sql
                    rollback_file = file_path.with_name(f"{file_path.stem}_rollback.sql")
                    if not rollback_file.exists():
                        self.logger.error(f"No rollback file found for migration {version}: {name}")
                        return False

                    self.logger.info(f"Rolling back migration {version}: {name}")
                    async with conn.transaction():
                        await conn.execute(rollback_file.read_text(encoding='utf-8'))
                        await conn.execute("DELETE FROM migrations WHERE version = $1", version)

                    self.logger.info(f"Rolled back migration {version}: {name}")

                return True

            finally:
                await conn.close()

        except Exception as e:
            self.logger.error(f"Rollback failed: {e}")
            return False

    async def get_migration_status(self) -> Dict:
        """Get current migration status."""
        if not self.validate_environment():
            return {}

        try:
            conn = await asyncpg.connect(self.database_url)

            try:
                await self.initialize_migrations_table(conn)
                applied_versions = await self.get_applied_migrations(conn)
                available_migrations = self.get_available_migrations()

                pending = [m for m in available_migrations if m[0] not in applied_versions]

                return {
                    'applied_count': len(applied_versions),
                    'available_count': len(available_migrations),
                    'pending_count': len(pending),
                    'applied_versions': applied_versions,
                    'pending_migrations': [(v, n) for v, n, _ in pending]
                }

            finally:
                await conn.close()

        except Exception as e:
            self.logger.error(f"Failed to get migration status: {e}")
            return {}


@dataclass
class MigrationResult:
    """Outcome of a migration subprocess."""
    success: bool
    returncode: Optional[int]
    output: str
    timed_out: bool = False


class MigrationRunner:
    """Runs the migration CLI against one database in a child process."""

    def __init__(self, python_executable: Optional[str] = None):
        self.python_executable = python_executable or sys.executable
        self.logger = logging.getLogger(__name__)

    def build_command(self, database_url: str, migrations_dir: Path) -> List[str]:
        return [
            self.python_executable, '-m', 'testbed.database.migration_manager', 'up',
            '--database-url', database_url,
            '--migrations-dir', str(migrations_dir),
        ]

    def _child_env(self, database_url: str) -> Dict[str, str]:
        env = dict(os.environ)
        python_path = env.get('PYTHONPATH')
        env['PYTHONPATH'] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), python_path]))
        env['DATABASE_URL'] = database_url
        return env

    async def apply(self, database_url: str, migrations_dir: Path, timeout_ms: int) -> MigrationResult:
        """
        Apply pending migrations in a subprocess.

        Args:
            database_url: Target database
            migrations_dir: Directory with NNN_name.sql files
            timeout_ms: Deadline for the whole run; the child is killed on expiry

        Returns:
            MigrationResult with the exit code and combined stdout/stderr
        """
        process = await asyncio.create_subprocess_exec(
            *self.build_command(database_url, migrations_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._child_env(database_url)
        )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            self.logger.error(f"Migration process exceeded {timeout_ms}ms, killing it")
            process.kill()
            await process.wait()
            return MigrationResult(success=False, returncode=process.returncode, output='', timed_out=True)

        output = (stdout or b'').decode('utf-8', errors='replace')
        return MigrationResult(success=process.returncode == 0, returncode=process.returncode, output=output)


async def main(argv: Optional[List[str]] = None):
    """Command-line interface for migration manager."""
    import argparse

    parser = argparse.ArgumentParser(description="testbed Migration Manager")
    parser.add_argument('command', choices=['up', 'status', 'rollback'],
                        help='Migration command to execute')
    parser.add_argument('--target', type=int, help='Target version for rollback')
    parser.add_argument('--database-url', help='Database URL (overrides DATABASE_URL env var)')
    parser.add_argument('--migrations-dir', help='Directory containing NNN_name.sql files')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    manager = MigrationManager(args.database_url, args.migrations_dir)

    if args.command == 'up':
        success = await manager.run_pending_migrations()
        sys.exit(0 if success else 1)

    elif args.command == 'status':
        status = await manager.get_migration_status()
        if not status:
            sys.exit(1)
        print(f"Applied migrations: {status.get('applied_count', 0)}")
        print(f"Available migrations: {status.get('available_count', 0)}")
        print(f"Pending migrations: {status.get('pending_count', 0)}")

        if status.get('pending_migrations'):
            print("\nPending migrations:")
            for version, name in status['pending_migrations']:
                print(f"  {version}: {name}")

    elif args.command == 'rollback':
        if args.target is None:
            print("ERROR: --target version is required for rollback")
            sys.exit(1)

        success = await manager.rollback_migration(args.target)
        sys.exit(0 if success else 1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
