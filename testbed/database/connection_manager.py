"""
Connection Manager for testbed.

Keeps at most one live asyncpg pool per database URL, bounded by a global
connection limit. Idle pools are evicted by a background sweep, connect
attempts race a deadline, and removal is safe to call more than once.
"""

import asyncio
import asyncpg
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from testbed.config.config_manager import ConfigManager, ConfigValidationError
from testbed.database.errors import (
    CapacityExceededError,
    ConnectTimeoutError,
    DatabaseConnectionError,
    mask_database_url,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PoolConfig:
    """Sizing and timing knobs for ConnectionManager."""
    max_connections: int = 10
    idle_timeout_ms: int = 30000
    connect_timeout_ms: int = 10000
    sweep_interval_ms: int = 10000
    pool_min_size: int = 1
    pool_max_size: int = 4

    @classmethod
    def from_config_manager(cls, config: ConfigManager) -> 'PoolConfig':
        return cls(
            max_connections=config.max_connections,
            idle_timeout_ms=config.idle_timeout_ms,
            connect_timeout_ms=config.connect_timeout_ms,
            sweep_interval_ms=config.sweep_interval_ms,
            pool_min_size=config.pool_min_size,
            pool_max_size=config.pool_max_size,
        )


@dataclass
class PooledConnection:
    """A live asyncpg pool for one database URL."""
    url: str
    pool: asyncpg.Pool
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)
    use_count: int = 1
    is_active: bool = True

    def touch(self):
        self.last_used_at = _utcnow()

    def idle_ms(self, now: Optional[datetime] = None) -> float:
        return ((now or _utcnow()) - self.last_used_at).total_seconds() * 1000


class ConnectionManager:
    """
    Bounded pool of database handles keyed by connection URL.

    Features:
    - One asyncpg pool per URL, reused across calls
    - Global capacity limit with an idle sweep before refusing
    - Connect deadline raced against the connect attempt
    - Background idle eviction task
    - Idempotent removal that never raises on close errors
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        pool_config: Optional[PoolConfig] = None
    ):
        """
        Initialize ConnectionManager.

        Args:
            config_manager: Source of the default pool settings
            pool_config: Explicit settings, takes precedence over config_manager
        """
        if pool_config is not None:
            self.config = pool_config
        elif config_manager is not None:
            self.config = PoolConfig.from_config_manager(config_manager)
        else:
            self.config = PoolConfig()

        self._pool: Dict[str, PooledConnection] = {}
        self._connecting: Dict[str, asyncio.Task] = {}

        # Abandoned connect attempts and their late close calls
        self._background: Set[asyncio.Future] = set()

        self._sweeper_task: Optional[asyncio.Task] = None

    @property
    def _connect_timeout(self) -> float:
        return self.config.connect_timeout_ms / 1000

    def _connection_count(self) -> int:
        return len(self._pool) + len(self._connecting)

    async def acquire(self, url: str) -> asyncpg.Pool:
        """
        Get the pooled handle for a database URL, connecting if needed.

        Args:
            url: Full connection URL of the database

        Returns:
            The asyncpg pool for the URL

        Raises:
            CapacityExceededError: If the pool is full after an idle sweep
            ConnectTimeoutError: If connecting missed the deadline
            DatabaseConnectionError: If connecting failed
        """
        self._ensure_sweeper()

        swept = False
        while True:
            existing = self._pool.get(url)
            if existing is not None and existing.is_active:
                existing.touch()
                existing.use_count += 1
                logger.debug(f"Reusing pooled connection for {mask_database_url(url)} (uses: {existing.use_count})")
                return existing.pool

            pending = self._connecting.get(url)
            if pending is not None:
                return await self._join_pending(url, pending)

            if self._connection_count() < self.config.max_connections:
                break

            if swept:
                raise CapacityExceededError(
                    'get pooled connection',
                    'Maximum connection pool size reached',
                    {
                        'current_connections': self._connection_count(),
                        'max_connections': self.config.max_connections,
                        'database_url': url,
                    }
                )
            await self.sweep_idle()
            swept = True

        task = asyncio.ensure_future(self._open_pooled(url))
        self._connecting[url] = task
        return await asyncio.shield(task)

    async def _join_pending(self, url: str, pending: asyncio.Task) -> asyncpg.Pool:
        pool = await asyncio.shield(pending)
        entry = self._pool.get(url)
        if entry is not None and entry.pool is pool:
            entry.touch()
            entry.use_count += 1
        return pool

    async def _open_pooled(self, url: str) -> asyncpg.Pool:
        try:
            pool = await self._connect_with_deadline(url, self._create_pool, self._close_pool)
            self._pool[url] = PooledConnection(url=url, pool=pool)
            logger.info(f"Opened pooled connection to {mask_database_url(url)}")
            return pool
        finally:
            self._connecting.pop(url, None)

    async def _create_pool(self, url: str) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            url,
            min_size=self.config.pool_min_size,
            max_size=self.config.pool_max_size,
            timeout=self._connect_timeout
        )

    async def _close_pool(self, pool: asyncpg.Pool):
        try:
            await asyncio.wait_for(pool.close(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Pool close timed out, terminating connections")
            pool.terminate()

    async def open_admin_connection(self, url: str) -> asyncpg.Connection:
        """
        Open a single unpooled connection, used for CREATE/DROP DATABASE.

        The same connect deadline and error mapping as ``acquire`` apply.
        The caller owns the connection and must close it.
        """
        async def connect(target: str) -> asyncpg.Connection:
            return await asyncpg.connect(target, timeout=self._connect_timeout)

        async def close(conn: asyncpg.Connection):
            await conn.close()

        return await self._connect_with_deadline(url, connect, close)

    async def _connect_with_deadline(
        self,
        url: str,
        connect: Callable[[str], Awaitable[Any]],
        close: Callable[[Any], Awaitable[None]]
    ) -> Any:
        """
        Race a connect attempt against the configured deadline.

        The attempt is not cancelled when the deadline fires. If it succeeds
        later, the handle it produces is closed in the background.
        """
        context = {
            'database_url': url,
            'timeout_ms': self.config.connect_timeout_ms,
        }
        connect_task = asyncio.ensure_future(connect(url))

        try:
            done, _ = await asyncio.wait({connect_task}, timeout=self._connect_timeout)
        except asyncio.CancelledError:
            self._close_when_done(connect_task, close)
            raise

        if not done:
            self._close_when_done(connect_task, close)
            raise ConnectTimeoutError('connect to database', 'Connection timeout', context)

        try:
            return connect_task.result()
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError('connect to database', 'Connection timeout', context, e) from e
        except asyncpg.InvalidPasswordError as e:
            raise DatabaseConnectionError('connect to database', f"Invalid password: {e}", context, e) from e
        except asyncpg.InvalidCatalogNameError as e:
            raise DatabaseConnectionError('connect to database', f"Database does not exist: {e}", context, e) from e
        except asyncpg.PostgresConnectionError as e:
            raise DatabaseConnectionError('connect to database', f"PostgreSQL connection error: {e}", context, e) from e
        except OSError as e:
            raise DatabaseConnectionError('connect to database', f"Cannot connect to host: {e}", context, e) from e
        except Exception as e:
            raise DatabaseConnectionError('connect to database', f"Unexpected connection error: {e}", context, e) from e

    def _close_when_done(self, connect_task: asyncio.Future, close: Callable[[Any], Awaitable[None]]):
        self._background.add(connect_task)

        def on_connected(task: asyncio.Future):
            self._background.discard(task)
            if task.cancelled() or task.exception() is not None:
                return
            logger.debug("Closing connection that arrived after its deadline")
            closer = asyncio.ensure_future(close(task.result()))
            self._background.add(closer)
            closer.add_done_callback(self._on_late_close_done)

        connect_task.add_done_callback(on_connected)

    def _on_late_close_done(self, closer: asyncio.Future):
        self._background.discard(closer)
        if not closer.cancelled() and closer.exception() is not None:
            logger.warning(f"Failed to close late connection: {closer.exception()}")

    def release(self, url: str):
        """Mark the URL as just used. Advisory only, nothing is closed."""
        entry = self._pool.get(url)
        if entry is not None:
            entry.touch()

    async def remove(self, url: str):
        """
        Tear down the pooled handle for a URL.

        The entry is deactivated and unmapped before any I/O, so concurrent
        callers never see it. Calling this for an unknown URL is a no-op.
        """
        entry = self._pool.pop(url, None)
        if entry is None:
            return
        entry.is_active = False

        try:
            await self._close_pool(entry.pool)
            logger.info(f"Removed pooled connection to {mask_database_url(url)}")
        except Exception as e:
            logger.warning(f"Error closing pooled connection to {mask_database_url(url)}: {e}")

    async def sweep_idle(self) -> int:
        """
        Remove every entry idle for longer than the idle timeout.

        Returns:
            Number of entries removed
        """
        now = _utcnow()
        expired = [
            url for url, entry in self._pool.items()
            if entry.idle_ms(now) > self.config.idle_timeout_ms
        ]
        if expired:
            await asyncio.gather(*(self.remove(url) for url in expired))
            logger.debug(f"Evicted {len(expired)} idle pooled connection(s)")
        return len(expired)

    async def drain_all(self):
        """Remove every pooled entry."""
        urls = list(self._pool.keys())
        await asyncio.gather(*(self.remove(url) for url in urls))

    def _ensure_sweeper(self):
        if self._sweeper_task is None or self._sweeper_task.done():
            self.start_idle_sweeper()

    def start_idle_sweeper(self):
        """Start the periodic idle sweep on the running event loop."""
        async def sweep_loop():
            while True:
                try:
                    await asyncio.sleep(self.config.sweep_interval_ms / 1000)
                    await self.sweep_idle()
                except asyncio.CancelledError:
                    logger.debug("Idle sweeper stopped")
                    break
                except Exception as e:
                    logger.warning(f"Error during automatic connection cleanup: {e}")

        self._sweeper_task = asyncio.ensure_future(sweep_loop())

    async def stop_idle_sweeper(self):
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def shutdown(self):
        """Stop the idle sweeper, drain every entry and settle late closes."""
        await self.stop_idle_sweeper()
        await self.drain_all()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def set_config(self, **overrides: int):
        """
        Override pool settings at runtime.

        Raises:
            ConfigValidationError: On an unknown key or a non-positive value
        """
        known = {f.name for f in dataclasses.fields(PoolConfig)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigValidationError(f"Unknown pool setting: {key}")
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigValidationError(f"Invalid {key}: '{value}' - must be a positive integer")
        self.config = dataclasses.replace(self.config, **overrides)

    def get_connection_info(self, url: str) -> Optional[PooledConnection]:
        return self._pool.get(url)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of pool usage."""
        connections = list(self._pool.values())
        total_use_count = sum(c.use_count for c in connections)
        return {
            'total_connections': len(connections),
            'active_connections': sum(1 for c in connections if c.is_active),
            'total_use_count': total_use_count,
            'average_use_count': total_use_count / len(connections) if connections else 0,
            'oldest_connection': min((c.created_at for c in connections), default=None),
        }
