"""
Fixtures for integration tests against a real PostgreSQL server.

The server comes from TESTBED_INTEGRATION_DATABASE_URL when set, otherwise
a throwaway container is started through Docker. Without either, every
integration test is skipped.
"""

import os
import logging

import docker
import pytest
import pytest_asyncio

from testbed.config.config_manager import ConfigManager
from testbed.testing.docker_manager import DockerTestManager
from testbed.testing.services import service_container

logger = logging.getLogger(__name__)


@pytest.fixture(scope="session")
def postgres_url():
    """Base URL of the PostgreSQL server shared by the integration session."""
    configured = os.getenv('TESTBED_INTEGRATION_DATABASE_URL')
    if configured:
        yield configured
        return

    try:
        manager = DockerTestManager()
    except docker.errors.DockerException as e:
        pytest.skip(f"Docker not available for integration tests: {e}")

    try:
        server = manager.start_postgres()
    except (docker.errors.DockerException, RuntimeError) as e:
        manager.cleanup_all()
        pytest.skip(f"Could not start PostgreSQL container: {e}")

    logger.info(f"Integration PostgreSQL listening on port {server.port}")
    try:
        yield server.database_url
    finally:
        manager.cleanup_all()


@pytest.fixture
def integration_config(postgres_url, monkeypatch, tmp_path):
    monkeypatch.setenv('ENV', 'test')
    monkeypatch.setenv('DATABASE_URL', postgres_url)
    return ConfigManager(config_dir=str(tmp_path))


@pytest_asyncio.fixture
async def services(integration_config):
    async with service_container(integration_config) as services:
        yield services
