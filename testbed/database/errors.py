"""
Error taxonomy for the testbed database layer.

Every failure carries a stable code, the operation that failed, and a small
context dictionary. ``to_log_format`` renders all of it with secrets masked
so errors can be logged without leaking credentials.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Type
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

MAX_CONTEXT_VALUE_LENGTH = 50
SECRET_MARKERS = ('password', 'secret')


class ErrorCode(str, Enum):
    """Stable error codes, grouped by area."""

    DATABASE_CONNECTION_FAILED = 'TEST_DB_1001'
    DATABASE_CREATION_FAILED = 'TEST_DB_1002'
    DATABASE_MIGRATION_FAILED = 'TEST_DB_1003'
    DATABASE_CLEANUP_FAILED = 'TEST_DB_1004'
    DATABASE_SEED_FAILED = 'TEST_DB_1005'
    DATABASE_QUERY_FAILED = 'TEST_DB_1006'
    DATABASE_NOT_FOUND = 'TEST_DB_1007'
    DATABASE_TRANSACTION_FAILED = 'TEST_DB_1008'
    POOL_CAPACITY_EXCEEDED = 'TEST_POOL_2001'
    POOL_CONNECT_TIMEOUT = 'TEST_POOL_2002'
    INVALID_CONFIGURATION = 'TEST_GEN_9001'
    INITIALIZATION_FAILED = 'TEST_GEN_9002'


def mask_database_url(url: str) -> str:
    """Replace the password of a connection URL with ``***``."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.password:
        return url

    userinfo = f"{parts.username}:***" if parts.username else "***"
    host = parts.hostname or ''
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def _sanitize_value(value: Any) -> str:
    if not isinstance(value, str):
        return str(value)

    if '://' in value:
        value = mask_database_url(value)
    if any(marker in value.lower() for marker in SECRET_MARKERS):
        return '[REDACTED]'
    if len(value) > MAX_CONTEXT_VALUE_LENGTH:
        return f"{value[:MAX_CONTEXT_VALUE_LENGTH - 3]}..."
    return value


class TestbedError(Exception):
    """
    Base class for all testbed failures.

    Args:
        operation: Short name of the failed operation
        details: Human readable description of what went wrong
        context: Extra metadata (suite name, URLs, limits)
        original_error: The lower level exception, if any
    """

    code: ErrorCode = ErrorCode.DATABASE_QUERY_FAILED
    component: str = 'DatabaseLifecycleManager'

    # Keep pytest from collecting this class from test modules that import it
    __test__ = False

    def __init__(
        self,
        operation: str,
        details: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        code: Optional[ErrorCode] = None
    ):
        self.operation = operation
        self.details = details
        self.context: Dict[str, Any] = dict(context or {})
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        if code is not None:
            self.code = code
        super().__init__(f"[{self.component}] {operation} failed: {details}")

    @property
    def message(self) -> str:
        return self.args[0]

    def add_context(self, **context: Any) -> 'TestbedError':
        """Merge context keys that are not already present."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def to_log_format(self) -> str:
        """Format the error with its code, context and cause for logging."""
        log_message = f"[{self.code.value}] {self.message}"
        if self.context:
            context_str = ', '.join(
                f"{key}: {_sanitize_value(value)}" for key, value in self.context.items()
            )
            log_message += f"\nContext: {{ {context_str} }}"
        if self.original_error is not None:
            log_message += f"\nOriginal Error: {self.original_error}"
        return log_message


class CapacityExceededError(TestbedError):
    """Raised when the connection pool is full even after an idle sweep."""
    code = ErrorCode.POOL_CAPACITY_EXCEEDED
    component = 'ConnectionManager'


class ConnectTimeoutError(TestbedError):
    """Raised when a connect attempt misses its deadline."""
    code = ErrorCode.POOL_CONNECT_TIMEOUT
    component = 'ConnectionManager'


class DatabaseConnectionError(TestbedError):
    """Raised when a connect attempt fails outright."""
    code = ErrorCode.DATABASE_CONNECTION_FAILED
    component = 'ConnectionManager'


class DatabaseCreationError(TestbedError):
    """Raised when CREATE DATABASE or provisioning fails."""
    code = ErrorCode.DATABASE_CREATION_FAILED


class MigrationError(TestbedError):
    """Raised when the migration tool exits non-zero or times out."""
    code = ErrorCode.DATABASE_MIGRATION_FAILED


class SeedingError(TestbedError):
    """Raised when seeding cannot produce a required parent set."""
    code = ErrorCode.DATABASE_SEED_FAILED


class CleanupError(TestbedError):
    """Raised when a wipe or a drop fails."""
    code = ErrorCode.DATABASE_CLEANUP_FAILED


class InvalidConnectionStringError(TestbedError):
    """Raised when a connection URL cannot be parsed."""
    code = ErrorCode.INVALID_CONFIGURATION


class NoActiveConnectionError(TestbedError):
    """Raised when no database is tracked for a suite."""
    code = ErrorCode.DATABASE_NOT_FOUND


class TransactionError(TestbedError):
    """Raised when a transactional callback fails."""
    code = ErrorCode.DATABASE_TRANSACTION_FAILED


class InvalidEnvironmentError(TestbedError):
    """Raised when the manager is used outside the test environment."""
    code = ErrorCode.INITIALIZATION_FAILED


@contextmanager
def reraise_as(error_cls: Type[TestbedError], operation: str, **context: Any) -> Iterator[None]:
    """
    Fail-loud policy for the creation path.

    A TestbedError raised inside the block keeps its type and gains any
    missing context keys. Anything else is wrapped in ``error_cls``.
    """
    try:
        yield
    except TestbedError as e:
        e.add_context(**context)
        raise
    except Exception as e:
        raise error_cls(operation, str(e) or type(e).__name__, context, e) from e


@contextmanager
def suppress_and_log(
    operation: str,
    error_cls: Type[TestbedError] = CleanupError,
    **context: Any
) -> Iterator[None]:
    """
    Log-and-continue policy for the teardown path.

    Failures are logged as warnings with their full context and do not
    propagate.
    """
    try:
        yield
    except Exception as e:
        if isinstance(e, TestbedError):
            error = e.add_context(**context)
        else:
            error = error_cls(operation, str(e) or type(e).__name__, context, e)
        logger.warning(error.to_log_format())
