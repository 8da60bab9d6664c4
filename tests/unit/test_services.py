"""
Tests for the ServiceContainer composition root.
"""

import pytest
from unittest.mock import AsyncMock, patch

from testbed.testing.services import ServiceContainer, service_container


class TestWiring:
    """Test that components share configuration and timing"""

    def test_components_share_one_monitor(self, mock_config_manager):
        services = ServiceContainer(mock_config_manager)

        assert services.cleanup_coordinator.performance_monitor is services.performance_monitor
        assert services.lifecycle_manager.performance_monitor is services.performance_monitor
        assert services.lifecycle_manager.connection_manager is services.connection_manager
        assert services.connection_manager.config.max_connections == mock_config_manager.max_connections


@pytest.mark.asyncio
class TestShutdown:
    """Test ordered, idempotent shutdown"""

    async def test_shutdown_drops_databases_then_closes_pool(self, mock_config_manager):
        # Arrange
        services = ServiceContainer(mock_config_manager)
        calls = []
        services.lifecycle_manager.cleanup_all_test_databases = AsyncMock(
            side_effect=lambda: calls.append('databases')
        )
        services.connection_manager.shutdown = AsyncMock(side_effect=lambda: calls.append('pool'))

        # Act
        await services.shutdown()
        await services.shutdown()

        # Assert
        assert calls == ['databases', 'pool']

    async def test_context_manager_shuts_down_on_error(self, mock_config_manager):
        with patch.object(ServiceContainer, 'shutdown', new_callable=AsyncMock) as mock_shutdown:
            with pytest.raises(RuntimeError):
                async with service_container(mock_config_manager) as services:
                    assert isinstance(services, ServiceContainer)
                    raise RuntimeError("test failed")

        mock_shutdown.assert_awaited_once()

    async def test_shutdown_with_nothing_created(self, mock_config_manager):
        async with service_container(mock_config_manager) as services:
            pass

        assert services.connection_manager.get_stats()['total_connections'] == 0
