"""
Configuration Manager for testbed.

Handles environment file loading, the base DATABASE_URL, pool sizing and
timeout settings, and validation of all numeric settings.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class ConfigManager:
    """
    Central configuration management for testbed.

    Provides:
    - Environment file loading with precedence (.env, then .env.<ENV>)
    - The base server URL that test databases are created on
    - Pool sizing, idle eviction and timeout settings
    - Validation of numeric settings
    """

    # Default values for the integer settings, keyed by environment variable
    DEFAULT_INTEGERS = {
        'TESTBED_MAX_CONNECTIONS': 10,
        'TESTBED_IDLE_TIMEOUT_MS': 30000,
        'TESTBED_CONNECT_TIMEOUT_MS': 10000,
        'TESTBED_SWEEP_INTERVAL_MS': 10000,
        'TESTBED_POOL_MIN_SIZE': 1,
        'TESTBED_POOL_MAX_SIZE': 4,
        'TESTBED_MIGRATION_TIMEOUT_MS': 30000,
    }

    DEFAULT_ADMIN_DATABASE = 'postgres'
    DEFAULT_MIGRATIONS_DIR = _PROJECT_ROOT / 'database' / 'migrations'

    def __init__(self, config_dir: Optional[str] = None, validate_database: bool = False):
        """
        Initialize ConfigManager.

        Args:
            config_dir: Directory containing environment files
            validate_database: Whether to require DATABASE_URL up front
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()

        self._env_vars: Dict[str, str] = {}
        self._load_env_files()

        self._validate_integers()
        if validate_database:
            self._validate_database_config()

    def _load_env_files(self):
        """Load environment files with precedence: .env.<ENV> > .env"""
        env_files = ['.env']
        env = os.getenv('ENV')
        if env:
            env_files.append(f'.env.{env}')

        for env_file in env_files:
            env_path = self.config_dir / env_file
            if env_path.exists():
                self._load_env_file(env_path)

    def _load_env_file(self, env_path: Path):
        """Load a single environment file into our internal env_vars dict."""
        with open(env_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    self._env_vars[key.strip()] = value.strip()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Look up a setting, os.environ first, then the loaded env files."""
        return os.getenv(key) or self._env_vars.get(key) or default

    def _get_positive_int(self, env_var: str) -> int:
        raw_value = self.get(env_var)
        if raw_value is None:
            return self.DEFAULT_INTEGERS[env_var]

        try:
            value = int(raw_value)
        except ValueError:
            raise ConfigValidationError(
                f"Invalid {env_var}: '{raw_value}' - must be a positive integer"
            )
        if value <= 0:
            raise ConfigValidationError(
                f"Invalid {env_var}: '{raw_value}' - must be a positive integer"
            )
        return value

    def _validate_integers(self):
        """Fail fast on malformed numeric settings."""
        for env_var in self.DEFAULT_INTEGERS:
            self._get_positive_int(env_var)

        if self.pool_min_size > self.pool_max_size:
            raise ConfigValidationError(
                f"TESTBED_POOL_MIN_SIZE ({self.pool_min_size}) cannot exceed "
                f"TESTBED_POOL_MAX_SIZE ({self.pool_max_size})"
            )

    def _validate_database_config(self):
        """Validate database configuration."""
        # Property access raises when DATABASE_URL is missing
        self.database_url

    @property
    def environment(self) -> str:
        """Get the runtime environment name (ENV)."""
        return self.get('ENV', 'dev')

    @property
    def is_test_environment(self) -> bool:
        """Check if running under the test environment."""
        return self.environment == 'test'

    @property
    def database_url(self) -> str:
        """Get the base DATABASE_URL that test databases are derived from."""
        database_url = self.get('DATABASE_URL')
        if not database_url:
            raise ConfigValidationError("DATABASE_URL is required but not configured")
        return database_url

    @property
    def admin_database(self) -> str:
        """Get the maintenance database used for CREATE/DROP DATABASE."""
        return self.get('TESTBED_ADMIN_DATABASE', self.DEFAULT_ADMIN_DATABASE)

    @property
    def max_connections(self) -> int:
        """Get the maximum number of pooled database URLs."""
        return self._get_positive_int('TESTBED_MAX_CONNECTIONS')

    @property
    def idle_timeout_ms(self) -> int:
        """Get the idle time after which a pooled connection is evicted."""
        return self._get_positive_int('TESTBED_IDLE_TIMEOUT_MS')

    @property
    def connect_timeout_ms(self) -> int:
        """Get the connect deadline."""
        return self._get_positive_int('TESTBED_CONNECT_TIMEOUT_MS')

    @property
    def sweep_interval_ms(self) -> int:
        """Get the interval of the background idle sweep."""
        return self._get_positive_int('TESTBED_SWEEP_INTERVAL_MS')

    @property
    def pool_min_size(self) -> int:
        """Get the minimum size of each per-database asyncpg pool."""
        return self._get_positive_int('TESTBED_POOL_MIN_SIZE')

    @property
    def pool_max_size(self) -> int:
        """Get the maximum size of each per-database asyncpg pool."""
        return self._get_positive_int('TESTBED_POOL_MAX_SIZE')

    @property
    def migration_timeout_ms(self) -> int:
        """Get the deadline for the migration subprocess."""
        return self._get_positive_int('TESTBED_MIGRATION_TIMEOUT_MS')

    @property
    def migrations_dir(self) -> Path:
        """Get the directory holding NNN_name.sql migration files."""
        configured = self.get('TESTBED_MIGRATIONS_DIR')
        return Path(configured) if configured else self.DEFAULT_MIGRATIONS_DIR


@contextmanager
def scoped_env(name: str, value: str) -> Iterator[None]:
    """
    Set an environment variable for the duration of a block.

    The previous value is restored afterwards, or the variable is removed
    if it was not set before. Restoration happens even if the block raises.
    """
    previous = os.environ.get(name)
    os.environ[name] = value
    try:
        yield
    finally:
        if previous is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = previous
