"""
Database package for testbed.

Provides pooled connections, foreign-key ordered cleanup, and the per-suite
database lifecycle.
"""

from .errors import (
    TestbedError,
    ErrorCode,
    CapacityExceededError,
    ConnectTimeoutError,
    DatabaseConnectionError,
    DatabaseCreationError,
    MigrationError,
    SeedingError,
    CleanupError,
    InvalidConnectionStringError,
    NoActiveConnectionError,
    TransactionError,
    InvalidEnvironmentError,
)
from .connection_manager import ConnectionManager, PoolConfig, PooledConnection
from .cleanup_coordinator import CleanupCoordinator, Table, DELETION_BATCHES, DELETION_ORDER
from .lifecycle_manager import (
    DatabaseLifecycleManager,
    SuiteDatabaseConfig,
    LogicalDatabase,
    ActiveTransaction,
)
from .seeder import DatabaseSeeder, SeedDataItem

__all__ = [
    'TestbedError',
    'ErrorCode',
    'CapacityExceededError',
    'ConnectTimeoutError',
    'DatabaseConnectionError',
    'DatabaseCreationError',
    'MigrationError',
    'SeedingError',
    'CleanupError',
    'InvalidConnectionStringError',
    'NoActiveConnectionError',
    'TransactionError',
    'InvalidEnvironmentError',
    'ConnectionManager',
    'PoolConfig',
    'PooledConnection',
    'CleanupCoordinator',
    'Table',
    'DELETION_BATCHES',
    'DELETION_ORDER',
    'DatabaseLifecycleManager',
    'SuiteDatabaseConfig',
    'LogicalDatabase',
    'ActiveTransaction',
    'DatabaseSeeder',
    'SeedDataItem',
]
