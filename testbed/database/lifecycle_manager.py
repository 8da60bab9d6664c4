"""
Database Lifecycle Manager for testbed.

Maps each test suite to its own PostgreSQL database and owns that database
from CREATE to DROP:

    Absent -> Provisioning -> Ready -> TornDown

Provisioning creates the database through an admin connection, opens a
pooled connection, runs migrations in a subprocess and optionally seeds a
baseline. Teardown forgets the suite first, then evicts the pooled
connection and drops the database. Teardown failures are logged, never
raised.
"""

import asyncio
import logging
import re
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from urllib.parse import urlsplit

import asyncpg

from testbed.config.config_manager import ConfigManager, ConfigValidationError, scoped_env
from testbed.database.cleanup_coordinator import CleanupCoordinator
from testbed.database.connection_manager import ConnectionManager
from testbed.database.errors import (
    DatabaseCreationError,
    InvalidConnectionStringError,
    InvalidEnvironmentError,
    MigrationError,
    NoActiveConnectionError,
    SeedingError,
    TransactionError,
    mask_database_url,
    reraise_as,
    suppress_and_log,
)
from testbed.database.migration_manager import MigrationRunner
from testbed.database.seeder import DatabaseSeeder, SeedDataItem, SeededData
from testbed.testing.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)

T = TypeVar('T')

# PostgreSQL truncates identifiers longer than this
MAX_DATABASE_NAME_LENGTH = 63
URL_TRUNCATE_LENGTH = 30
RANDOM_SUFFIX_LENGTH = 6
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits

DATABASE_TYPES = ('unit', 'integration', 'e2e')
ISOLATION_LEVELS = ('database', 'transaction', 'none')


@dataclass
class SuiteDatabaseConfig:
    """How a suite wants its database provisioned."""
    type: str = 'integration'
    isolation_level: str = 'database'
    auto_cleanup: bool = True
    seed_data: bool = False

    def __post_init__(self):
        if self.type not in DATABASE_TYPES:
            raise ConfigValidationError(
                f"Invalid database type: '{self.type}' - must be one of {', '.join(DATABASE_TYPES)}"
            )
        if self.isolation_level not in ISOLATION_LEVELS:
            raise ConfigValidationError(
                f"Invalid isolation level: '{self.isolation_level}' - must be one of {', '.join(ISOLATION_LEVELS)}"
            )


@dataclass
class LogicalDatabase:
    """
    A suite's physical database.

    Only the URL is kept. The pooled handle is looked up through the
    ConnectionManager on every use, since idle and capacity sweeps may
    close it at any time.
    """
    test_suite: str
    name: str
    url: str
    database_type: str
    auto_cleanup: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ActiveTransaction:
    """
    Bookkeeping record for a reset-to-clean marker.

    Not an engine transaction. Rolling it back wipes the suite's tables.
    """
    test_suite: str
    transaction_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def extract_base_url(full_url: str) -> str:
    """
    Strip the database, path and query from a connection URL.

    ``postgresql://u:p@host:5432/db?schema=public`` becomes
    ``postgresql://u:p@host:5432``.

    Raises:
        InvalidConnectionStringError: If the URL is empty or has no scheme or host
    """
    if not full_url or not full_url.strip():
        raise InvalidConnectionStringError(
            'parse database URL',
            'Invalid or missing database URL',
            {'provided_url': (full_url or '')[:URL_TRUNCATE_LENGTH]}
        )

    try:
        parts = urlsplit(full_url.strip())
        # Accessing port validates it
        parts.port
    except ValueError as e:
        raise InvalidConnectionStringError(
            'parse database URL',
            'Invalid or missing database URL',
            {'provided_url': full_url[:URL_TRUNCATE_LENGTH]},
            e
        ) from e

    if not parts.scheme or not parts.hostname:
        raise InvalidConnectionStringError(
            'parse database URL',
            'Missing protocol or host',
            {'provided_url': full_url[:URL_TRUNCATE_LENGTH]}
        )

    return f"{parts.scheme}://{parts.netloc}"


def sanitize_for_database_name(value: str) -> str:
    """Lowercase and collapse every run of non-alphanumerics into one underscore."""
    return re.sub(r'[^a-z0-9]+', '_', value.lower()).strip('_')


def generate_unique_suffix() -> str:
    """Millisecond timestamp plus a short random tail."""
    random_part = ''.join(secrets.choice(_RANDOM_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
    return f"{int(time.time() * 1000)}_{random_part}"


def generate_test_database_name(test_suite: str, database_type: str) -> str:
    """
    Build ``test_{type}_{suite}_{timestamp}_{random}`` within PostgreSQL's
    identifier limit. The suite part is truncated first.
    """
    prefix = f"test_{sanitize_for_database_name(database_type)}_"
    suffix = generate_unique_suffix()

    budget = MAX_DATABASE_NAME_LENGTH - len(prefix) - len(suffix) - 1
    suite_part = sanitize_for_database_name(test_suite)[:max(budget, 0)].rstrip('_')

    name = f"{prefix}{suite_part}_{suffix}" if suite_part else f"{prefix}{suffix}"
    return re.sub(r'_+', '_', name)


class DatabaseLifecycleManager:
    """
    Creates, tracks and tears down one database per test suite.

    Features:
    - Idempotent, de-duplicated provisioning per suite
    - Migrations through a subprocess with a deadline
    - Optional baseline seeding
    - Reset-to-clean transaction markers and native transactions
    - Teardown that never raises
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        connection_manager: ConnectionManager,
        cleanup_coordinator: CleanupCoordinator,
        migration_runner: Optional[MigrationRunner] = None,
        performance_monitor: Optional[PerformanceMonitor] = None,
        seeder_factory: Callable[[Any], DatabaseSeeder] = DatabaseSeeder
    ):
        """
        Initialize DatabaseLifecycleManager.

        Args:
            config_manager: Source of DATABASE_URL, ENV and migration settings
            connection_manager: Pool for per-suite connections
            cleanup_coordinator: Table wipes for seeding and transaction resets
            migration_runner: Runs the migration subprocess
            performance_monitor: Times setup and teardown
            seeder_factory: Builds a seeder for a pooled connection

        Raises:
            ConfigValidationError: If DATABASE_URL is not configured
            InvalidConnectionStringError: If DATABASE_URL cannot be parsed
        """
        self.config = config_manager
        self.connection_manager = connection_manager
        self.cleanup_coordinator = cleanup_coordinator
        self.migration_runner = migration_runner or MigrationRunner()
        self.performance_monitor = performance_monitor or cleanup_coordinator.performance_monitor
        self.seeder_factory = seeder_factory

        self._base_url = extract_base_url(config_manager.database_url)

        self._databases: Dict[str, LogicalDatabase] = {}
        self._provisioning: Dict[str, asyncio.Task] = {}
        self._transactions: Dict[str, ActiveTransaction] = {}
        self._initialized = False

        # DATABASE_URL is process-wide, so scopes that set it must not interleave
        self._ambient_env_lock = asyncio.Lock()

    async def initialize(self):
        """
        Refuse to run outside the test environment. Safe to call repeatedly.

        Raises:
            InvalidEnvironmentError: If ENV is not ``test``
        """
        if self._initialized:
            return

        environment = self.config.environment
        if environment != 'test':
            raise InvalidEnvironmentError(
                'initialize',
                'DatabaseLifecycleManager can only be used in the test environment',
                {'environment': environment}
            )

        self._initialized = True
        logger.debug(f"Lifecycle manager ready for {mask_database_url(self._base_url)}")

    def get_base_url(self) -> str:
        return self._base_url

    @property
    def admin_url(self) -> str:
        return self.build_database_url(self.config.admin_database)

    def build_database_url(self, database_name: str) -> str:
        return f"{self._base_url}/{database_name}"

    extract_base_url = staticmethod(extract_base_url)
    generate_test_database_name = staticmethod(generate_test_database_name)

    def get_test_database(self, test_suite: str) -> Optional[LogicalDatabase]:
        return self._databases.get(test_suite)

    def get_pool_stats(self) -> Dict[str, Any]:
        return self.connection_manager.get_stats()

    def _require_database(self, test_suite: str, operation: str) -> LogicalDatabase:
        database = self._databases.get(test_suite)
        if database is None:
            raise NoActiveConnectionError(
                operation,
                'No database connection for test suite',
                {'test_suite': test_suite, 'available_databases': ', '.join(self._databases)}
            )
        return database

    async def get_connection(self, test_suite: str) -> asyncpg.Pool:
        """
        Pooled handle for a suite's database. A pool evicted by an idle or
        capacity sweep is reopened.

        Raises:
            NoActiveConnectionError: If the suite has no database
        """
        database = self._require_database(test_suite, 'get connection')
        return await self.connection_manager.acquire(database.url)

    # =============================================================================
    # PROVISIONING
    # =============================================================================

    async def create_test_database(
        self,
        test_suite: str,
        config: Optional[SuiteDatabaseConfig] = None
    ) -> LogicalDatabase:
        """
        Get or create the database for a suite.

        Concurrent calls for the same suite share one provisioning attempt.

        Args:
            test_suite: Logical suite name
            config: Provisioning options, defaults to an unseeded integration database

        Returns:
            The suite's LogicalDatabase

        Raises:
            InvalidEnvironmentError: Outside the test environment
            TestbedError: Any provisioning failure, with suite context attached
        """
        await self.initialize()

        existing = self._databases.get(test_suite)
        if existing is not None:
            return existing

        pending = self._provisioning.get(test_suite)
        if pending is None:
            pending = asyncio.ensure_future(
                self._provision(test_suite, config or SuiteDatabaseConfig())
            )
            self._provisioning[test_suite] = pending

        return await asyncio.shield(pending)

    async def _provision(self, test_suite: str, config: SuiteDatabaseConfig) -> LogicalDatabase:
        database_name = self.generate_test_database_name(test_suite, config.type)
        database_url = self.build_database_url(database_name)
        context = {
            'test_suite': test_suite,
            'database_name': database_name,
            'database_url': database_url,
            'config_type': config.type,
            'isolation_level': config.isolation_level,
        }

        async def provision() -> LogicalDatabase:
            created = False
            try:
                with reraise_as(DatabaseCreationError, 'create test database', **context):
                    await self.create_database(database_name)
                    created = True

                    await self.connection_manager.acquire(database_url)
                    await self.run_migrations(database_url)

                    database = LogicalDatabase(
                        test_suite=test_suite,
                        name=database_name,
                        url=database_url,
                        database_type=config.type,
                        auto_cleanup=config.auto_cleanup
                    )
                    if config.seed_data:
                        await self._seed(database)

                    # Concurrent callers see the suite only once it is Ready
                    self._databases[test_suite] = database
                    logger.info(f"Test database ready for '{test_suite}': {database_name}")
                    return database
            except Exception:
                await self.connection_manager.remove(database_url)
                if created:
                    await self.drop_database(database_name)
                raise

        try:
            return await self.performance_monitor.track_setup(provision, name=f"provision:{test_suite}")
        finally:
            self._provisioning.pop(test_suite, None)

    async def create_database(self, database_name: str):
        """
        Issue CREATE DATABASE over an admin connection. An existing database
        with the same name is not an error.

        Raises:
            DatabaseCreationError: If CREATE fails for any other reason
            ConnectTimeoutError: If the admin connection missed its deadline
            DatabaseConnectionError: If the admin connection failed
        """
        admin_conn = await self.connection_manager.open_admin_connection(self.admin_url)
        try:
            await admin_conn.execute(f'CREATE DATABASE "{database_name}"')
            logger.info(f"Created database {database_name}")
        except asyncpg.DuplicateDatabaseError:
            logger.debug(f"Database {database_name} already exists")
        except Exception as e:
            if 'already exists' in str(e):
                logger.debug(f"Database {database_name} already exists")
                return
            raise DatabaseCreationError(
                'create database',
                str(e),
                {'database_name': database_name, 'admin_url': self.admin_url},
                e
            ) from e
        finally:
            with suppress_and_log('close admin connection', database_name=database_name):
                await admin_conn.close()

    async def run_migrations(self, database_url: str):
        """
        Apply pending migrations to a database in a subprocess.

        DATABASE_URL points at the target for the duration of the call and is
        restored afterwards, even on failure. The variable is process-wide,
        so migrations for different suites run one at a time; parallel suite
        setup is bounded by migration time. The child process itself gets
        the target explicitly and does not depend on the ambient value.

        Raises:
            MigrationError: If the migration process fails or times out
        """
        migrations_dir = self.config.migrations_dir
        timeout_ms = self.config.migration_timeout_ms

        async with self._ambient_env_lock:
            with scoped_env('DATABASE_URL', database_url):
                result = await self.migration_runner.apply(database_url, migrations_dir, timeout_ms)

        if result.success:
            logger.debug(f"Migrations applied to {mask_database_url(database_url)}")
            return

        if result.timed_out:
            details = f"Migration timed out after {timeout_ms}ms"
        else:
            details = f"Migration exited with code {result.returncode}"
        logger.error(f"{details}\n{result.output}")
        raise MigrationError(
            'run migrations',
            details,
            {
                'database_url': database_url,
                'migrations_dir': str(migrations_dir),
                'timeout_ms': timeout_ms,
                'output': result.output.strip()[-500:],
            }
        )

    async def seed_database(
        self,
        test_suite: str,
        seed_data: Optional[List[SeedDataItem]] = None
    ) -> SeededData:
        """
        Wipe a suite's database and insert seed rows.

        Args:
            test_suite: Suite whose database is seeded
            seed_data: Rows to insert instead of the default baseline

        Raises:
            NoActiveConnectionError: If the suite has no database
            SeedingError: If seeding fails as a whole
        """
        database = self._require_database(test_suite, 'seed database')
        return await self._seed(database, seed_data)

    async def _seed(
        self,
        database: LogicalDatabase,
        seed_data: Optional[List[SeedDataItem]] = None
    ) -> SeededData:
        with reraise_as(
            SeedingError,
            'seed database',
            test_suite=database.test_suite,
            database_name=database.name,
            seed_data_provided=seed_data is not None,
            seed_data_count=len(seed_data or ())
        ):
            pool = await self.connection_manager.acquire(database.url)
            await self.cleanup_coordinator.wipe(pool, parallel=True)
            seeder = self.seeder_factory(pool)
            if seed_data is not None:
                return await seeder.insert_items(seed_data)
            return await seeder.seed_defaults()

    # =============================================================================
    # TEARDOWN
    # =============================================================================

    async def cleanup_test_database(self, test_suite: str):
        """
        Tear down a suite's database. Unknown suites are a no-op, and
        failures are logged rather than raised.
        """
        pending = self._provisioning.get(test_suite)
        if pending is not None:
            # A failed provisioning already cleaned up after itself
            await asyncio.wait({pending})

        database = self._databases.pop(test_suite, None)
        if database is None:
            return

        self._forget_transactions(test_suite)

        async def teardown():
            with suppress_and_log(
                'cleanup test database',
                test_suite=test_suite,
                database_name=database.name,
                database_url=database.url
            ):
                self.connection_manager.release(database.url)
                await self.connection_manager.remove(database.url)
                await self.drop_database(database.name)

        await self.performance_monitor.track_cleanup(teardown, name=f"teardown:{test_suite}")

    async def cleanup_all_test_databases(self):
        """
        Tear down every suite created with ``auto_cleanup``, concurrently.

        Suites that finish provisioning while earlier teardowns run are torn
        down too. Suites created with ``auto_cleanup=False`` stay tracked
        until ``cleanup_test_database`` is called for them.
        """
        while True:
            if self._provisioning:
                await asyncio.wait(set(self._provisioning.values()))

            suites = [suite for suite, database in self._databases.items() if database.auto_cleanup]
            if not suites:
                break

            results = await asyncio.gather(
                *(self.cleanup_test_database(suite) for suite in suites),
                return_exceptions=True
            )
            for suite, result in zip(suites, results):
                if isinstance(result, Exception):
                    logger.warning(f"Cleanup of test suite '{suite}' failed: {result}")

        kept = [suite for suite, database in self._databases.items() if not database.auto_cleanup]
        if kept:
            logger.info(f"Keeping test databases without auto cleanup: {', '.join(kept)}")

    async def drop_database(self, database_name: str):
        """Terminate other backends on a database and drop it. Never raises."""
        with suppress_and_log('drop database', database_name=database_name, admin_url=self.admin_url):
            admin_conn = await self.connection_manager.open_admin_connection(self.admin_url)
            try:
                await admin_conn.execute(
                    """
                    SELECT pg_terminate_backend(pid)
                    FROM pg_stat_activity
                    WHERE datname = $1 AND pid <> pg_backend_pid()
                    """,
                    database_name
                )
                await admin_conn.execute(f'DROP DATABASE IF EXISTS "{database_name}"')
                logger.info(f"Dropped database {database_name}")
            finally:
                await admin_conn.close()

    # =============================================================================
    # TRANSACTIONS
    # =============================================================================

    def _suite_transactions(self, test_suite: str) -> List[ActiveTransaction]:
        return [t for t in self._transactions.values() if t.test_suite == test_suite]

    def _forget_transactions(self, test_suite: str):
        for transaction in self._suite_transactions(test_suite):
            self._transactions.pop(f"{test_suite}:{transaction.transaction_id}", None)

    async def start_transaction(self, test_suite: str) -> str:
        """
        Record a reset-to-clean marker for a suite.

        No engine transaction is opened. ``rollback_transaction`` wipes the
        suite's tables. Use ``with_transaction`` for real atomicity.

        Returns:
            The new transaction id

        Raises:
            NoActiveConnectionError: If the suite has no database
        """
        self._require_database(test_suite, 'start transaction')
        transaction_id = str(uuid.uuid4())
        self._transactions[f"{test_suite}:{transaction_id}"] = ActiveTransaction(
            test_suite=test_suite,
            transaction_id=transaction_id
        )
        return transaction_id

    async def rollback_transaction(self, test_suite: str, transaction_id: str):
        """
        Reset a suite's tables and forget the marker. Unknown ids are a no-op.
        A failed wipe is logged and the marker is kept.
        """
        transaction_key = f"{test_suite}:{transaction_id}"
        transaction = self._transactions.get(transaction_key)
        if transaction is None:
            return

        with suppress_and_log(
            'rollback transaction',
            error_cls=TransactionError,
            test_suite=test_suite,
            transaction_id=transaction_id,
            transaction_key=transaction_key
        ):
            pool = await self.get_connection(test_suite)
            await self.cleanup_coordinator.wipe(pool, parallel=True)
            self._transactions.pop(transaction_key, None)

    async def rollback_active_transactions(self, test_suite: str):
        for transaction in self._suite_transactions(test_suite):
            await self.rollback_transaction(test_suite, transaction.transaction_id)

    def get_active_transactions(self, test_suite: str) -> List[str]:
        return [t.transaction_id for t in self._suite_transactions(test_suite)]

    async def with_transaction(
        self,
        test_suite: str,
        callback: Callable[[asyncpg.Connection], Awaitable[T]],
        isolation: Optional[str] = None
    ) -> T:
        """
        Run a callback inside a native database transaction.

        The transaction commits when the callback returns and rolls back when
        it raises.

        Args:
            test_suite: Suite whose database is used
            callback: Receives the connection the transaction runs on
            isolation: Optional isolation level, e.g. ``serializable``

        Returns:
            The callback's result

        Raises:
            NoActiveConnectionError: If the suite has no database
            TransactionError: If the callback or the transaction fails
        """
        database = self._require_database(test_suite, 'execute transaction')
        pool = await self.connection_manager.acquire(database.url)

        try:
            async with pool.acquire() as conn:
                async with conn.transaction(isolation=isolation):
                    return await callback(conn)
        except TransactionError:
            raise
        except Exception as e:
            raise TransactionError(
                'execute transaction',
                str(e) or type(e).__name__,
                {'test_suite': test_suite, 'database_name': database.name},
                e
            ) from e
