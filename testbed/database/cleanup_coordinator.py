"""
Foreign-key ordered wipe of the application tables.

Tables are deleted children first. In parallel mode the tables of one batch
are deleted concurrently, and batches run strictly one after another.
"""

import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

import asyncpg

from testbed.database.errors import CleanupError
from testbed.testing.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)

Executor = Union[asyncpg.Pool, asyncpg.Connection]


class Table(str, Enum):
    """Application tables created by the initial schema migration."""
    ACCOUNTS = 'accounts'
    BOOKING_TYPES = 'booking_types'
    TIME_SLOTS = 'time_slots'
    DISCOUNTS = 'discounts'
    CUSTOM_SERVICES = 'custom_services'
    SESSIONS = 'sessions'
    CONVERSATIONS = 'conversations'
    MESSAGES = 'messages'
    REFRESH_TOKENS = 'refresh_tokens'
    NOTIFICATIONS = 'notifications'


class OnDelete(str, Enum):
    RESTRICT = 'RESTRICT'
    CASCADE = 'CASCADE'
    SET_NULL = 'SET NULL'


# child table -> ((parent table, ON DELETE action), ...)
FOREIGN_KEYS: Dict[Table, Tuple[Tuple[Table, OnDelete], ...]] = {
    Table.ACCOUNTS: (),
    Table.BOOKING_TYPES: ((Table.ACCOUNTS, OnDelete.CASCADE),),
    Table.TIME_SLOTS: ((Table.ACCOUNTS, OnDelete.CASCADE),),
    Table.DISCOUNTS: ((Table.ACCOUNTS, OnDelete.CASCADE),),
    Table.CUSTOM_SERVICES: ((Table.ACCOUNTS, OnDelete.CASCADE),),
    Table.REFRESH_TOKENS: ((Table.ACCOUNTS, OnDelete.CASCADE),),
    Table.NOTIFICATIONS: (
        (Table.ACCOUNTS, OnDelete.CASCADE),
        (Table.ACCOUNTS, OnDelete.SET_NULL),
    ),
    Table.SESSIONS: (
        (Table.ACCOUNTS, OnDelete.RESTRICT),
        (Table.BOOKING_TYPES, OnDelete.RESTRICT),
        (Table.TIME_SLOTS, OnDelete.RESTRICT),
        (Table.DISCOUNTS, OnDelete.SET_NULL),
    ),
    Table.MESSAGES: (
        (Table.ACCOUNTS, OnDelete.RESTRICT),
        (Table.SESSIONS, OnDelete.SET_NULL),
        (Table.CUSTOM_SERVICES, OnDelete.SET_NULL),
        (Table.CONVERSATIONS, OnDelete.SET_NULL),
    ),
    # conversations <-> messages is a cycle, broken by SET NULL on both sides
    Table.CONVERSATIONS: (
        (Table.MESSAGES, OnDelete.SET_NULL),
        (Table.ACCOUNTS, OnDelete.SET_NULL),
    ),
}

DELETION_BATCHES: Tuple[Tuple[Table, ...], ...] = (
    (Table.REFRESH_TOKENS, Table.NOTIFICATIONS, Table.MESSAGES),
    (Table.CONVERSATIONS, Table.SESSIONS),
    (Table.TIME_SLOTS, Table.DISCOUNTS, Table.BOOKING_TYPES, Table.CUSTOM_SERVICES),
    (Table.ACCOUNTS,),
)

DELETION_ORDER: Tuple[Table, ...] = tuple(table for batch in DELETION_BATCHES for table in batch)


async def _delete_all(table: Table, connection: Executor) -> str:
    return await connection.execute(f'DELETE FROM "{table.value}"')


class CleanupCoordinator:
    """Deletes every row of the application tables without breaking foreign keys."""

    def __init__(self, performance_monitor: Optional[PerformanceMonitor] = None):
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self._deleters: Dict[Table, Callable[[Executor], Awaitable[str]]] = {
            table: partial(_delete_all, table) for table in Table
        }

    async def wipe(self, connection: Executor, parallel: bool = True):
        """
        Delete all rows from every application table.

        Args:
            connection: asyncpg pool or connection of the target database.
                Parallel mode needs a pool, a single connection runs one
                query at a time.
            parallel: Delete the tables of each batch concurrently

        Raises:
            CleanupError: On the first failed delete. Later batches are skipped.
        """
        async def run():
            if parallel:
                await self._wipe_parallel(connection)
            else:
                await self._wipe_sequential(connection)

        await self.performance_monitor.track_database_operation(
            'batch-cleanup', run, {'parallel': parallel}
        )

    async def _wipe_sequential(self, connection: Executor):
        for table in DELETION_ORDER:
            try:
                await self._deleters[table](connection)
            except Exception as e:
                raise CleanupError(
                    'sequential batch cleanup',
                    f"Failed to delete from {table.value}: {e}",
                    {'mode': 'sequential', 'operation': 'delete_all', 'table': table.value},
                    e
                ) from e
        logger.debug(f"Sequentially wiped {len(DELETION_ORDER)} tables")

    async def _wipe_parallel(self, connection: Executor):
        for index, batch in enumerate(DELETION_BATCHES):
            results = await asyncio.gather(
                *(self._deleters[table](connection) for table in batch),
                return_exceptions=True
            )
            for table, result in zip(batch, results):
                if isinstance(result, BaseException):
                    raise CleanupError(
                        'parallel batch cleanup',
                        f"Failed to delete from {table.value}: {result}",
                        {
                            'mode': 'parallel',
                            'operation': 'delete_all',
                            'table': table.value,
                            'batch': index,
                        },
                        result
                    ) from result
        logger.debug(f"Wiped {len(DELETION_ORDER)} tables in {len(DELETION_BATCHES)} batches")
