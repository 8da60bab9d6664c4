"""
Docker Test Manager

Starts a throwaway PostgreSQL server in Docker for integration tests and
removes it, with its anonymous volumes, when the run is over.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import docker

logger = logging.getLogger(__name__)

CONTAINER_NAME_PREFIX = 'testbed_postgres'


@dataclass
class PostgresServer:
    """Connection details of a started PostgreSQL container."""
    container: Any
    host: str
    port: int
    user: str
    password: str
    database: str

    @property
    def database_url(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class DockerTestManager:
    """Manages Docker test containers for the integration suite."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        Initialize Docker test manager.

        Raises:
            docker.errors.DockerException: If the Docker daemon is unreachable
        """
        self.client = client or docker.from_env()
        self.containers: List[Any] = []

    def create_test_container(self, name: str, config: Dict[str, Any]) -> Any:
        """Create and start a container from an image configuration."""
        if 'image' not in config:
            raise ValueError("Container configuration must specify an 'image'")

        port_bindings = dict(config.get('port_mapping', {}))
        container_name = f"{name}_{int(time.time() * 1000) % 100000}"

        container_kwargs = {
            'image': config['image'],
            'name': container_name,
            'detach': True,
            'ports': port_bindings or None,
            'environment': config.get('environment', {})
        }
        if 'command' in config:
            container_kwargs['command'] = config['command']
        if 'healthcheck' in config:
            container_kwargs['healthcheck'] = config['healthcheck']

        container = self.client.containers.run(**container_kwargs)
        self.containers.append(container)
        logger.info(f"Started container {container_name} ({config['image']})")
        return container

    def wait_for_health(self, container: Any, timeout: int = 60) -> bool:
        """Poll the container's healthcheck until it reports healthy."""
        start_time = time.time()
        while time.time() - start_time < timeout:
            container.reload()
            health = container.attrs.get('State', {}).get('Health', {})
            if health.get('Status') == 'healthy':
                return True
            if container.status not in ('created', 'running'):
                logger.warning(f"Container {container.name} stopped with status {container.status}")
                return False
            time.sleep(1)

        logger.warning(f"Container {container.name} not healthy after {timeout}s")
        return False

    def start_postgres(
        self,
        image: str = 'postgres:17',
        user: str = 'testbed',
        password: str = 'testbed_password',
        database: str = 'testbed',
        timeout: int = 60
    ) -> PostgresServer:
        """
        Start a PostgreSQL container on a random host port and wait until
        it accepts connections.

        Raises:
            RuntimeError: If the server does not become healthy in time
        """
        container = self.create_test_container(CONTAINER_NAME_PREFIX, {
            'image': image,
            'environment': {
                'POSTGRES_DB': database,
                'POSTGRES_USER': user,
                'POSTGRES_PASSWORD': password,
            },
            'port_mapping': {'5432/tcp': None},
            'healthcheck': {
                'test': ['CMD-SHELL', f"pg_isready -U {user} -d {database}"],
                'interval': 1000000000,  # 1s in nanoseconds
                'timeout': 5000000000,   # 5s in nanoseconds
                'retries': 30
            }
        })

        if not self.wait_for_health(container, timeout=timeout):
            raise RuntimeError(f"PostgreSQL container {container.name} failed to start")

        container.reload()
        host_port = int(container.ports['5432/tcp'][0]['HostPort'])
        return PostgresServer(
            container=container,
            host='localhost',
            port=host_port,
            user=user,
            password=password,
            database=database
        )

    def cleanup_all(self):
        """Stop and remove every tracked container and its anonymous volumes."""
        for container in self.containers[:]:
            try:
                container.stop(timeout=10)
            except docker.errors.APIError as e:
                logger.debug(f"Container {container.name} already stopped: {e}")

            try:
                container.remove(force=True, v=True)
            except docker.errors.NotFound:
                pass
            except docker.errors.APIError as e:
                logger.warning(f"Failed to remove container {container.name}: {e}")
            self.containers.remove(container)
