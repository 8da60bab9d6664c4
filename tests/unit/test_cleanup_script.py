"""
Tests for scripts/cleanup_test_databases.py, the orphaned database sweeper.
"""

import pytest
import importlib.util
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg

SCRIPT_PATH = Path(__file__).resolve().parent.parent.parent / "scripts" / "cleanup_test_databases.py"


@pytest.fixture(scope="module")
def script():
    spec = importlib.util.spec_from_file_location("cleanup_test_databases", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def make_connection(names):
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[{'datname': name} for name in names])
    conn.execute = AsyncMock()
    conn.close = AsyncMock()
    return conn


@pytest.mark.asyncio
class TestCleanupScript:
    """Test discovery and dropping of leftover test databases"""

    async def test_prefix_wildcards_are_escaped(self, script):
        conn = make_connection(['test_unit_a_1_abc'])

        names = await script.list_test_databases(conn)

        assert names == ['test_unit_a_1_abc']
        assert conn.fetch.await_args.args[1] == 'test\\_%'

    async def test_dry_run_drops_nothing(self, script):
        conn = make_connection(['test_a', 'test_b'])

        with patch.object(script.asyncpg, 'connect', new_callable=AsyncMock, return_value=conn) as mock_connect:
            count = await script.cleanup_test_databases(
                "postgresql://u:p@localhost:5432/app", 'postgres', dry_run=True
            )

        assert count == 2
        mock_connect.assert_awaited_once_with("postgresql://u:p@localhost:5432/postgres")
        conn.execute.assert_not_awaited()
        conn.close.assert_awaited_once()

    async def test_each_database_is_terminated_and_dropped(self, script):
        conn = make_connection(['test_a', 'test_b'])

        with patch.object(script.asyncpg, 'connect', new_callable=AsyncMock, return_value=conn):
            count = await script.cleanup_test_databases("postgresql://u:p@localhost:5432/app", 'postgres')

        assert count == 2
        statements = [c.args[0] for c in conn.execute.await_args_list]
        assert 'DROP DATABASE IF EXISTS "test_a"' in statements
        assert 'DROP DATABASE IF EXISTS "test_b"' in statements
        assert sum('pg_terminate_backend' in s for s in statements) == 2

    async def test_failed_drop_is_skipped(self, script):
        conn = make_connection(['test_a', 'test_b'])

        async def execute(query, *args):
            if query == 'DROP DATABASE IF EXISTS "test_a"':
                raise asyncpg.ObjectInUseError("database is being accessed by other users")
        conn.execute.side_effect = execute

        with patch.object(script.asyncpg, 'connect', new_callable=AsyncMock, return_value=conn):
            count = await script.cleanup_test_databases("postgresql://u:p@localhost:5432/app", 'postgres')

        assert count == 1
        conn.close.assert_awaited_once()
