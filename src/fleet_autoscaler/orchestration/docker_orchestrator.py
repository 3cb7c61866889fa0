"""Docker-backed container orchestrator."""

import re
import asyncio
import logging
import functools
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from .base import ContainerOrchestrator, ResourceLimits
from ..core.exceptions import (
    InstanceNotFoundError, InstanceStartTimeoutError, OrchestratorError,
    OrchestratorUnavailableError
)
from ..core.types import InstanceDescriptor


logger = logging.getLogger(__name__)

_NANOSECONDS = 1_000_000_000

# Built-in container health probe.
HEALTHCHECK_INTERVAL = 30
HEALTHCHECK_TIMEOUT = 10
HEALTHCHECK_RETRIES = 3
HEALTHCHECK_START_PERIOD = 40


class DockerContainerOrchestrator(ContainerOrchestrator):
    """Runs service instances as local Docker containers.

    Instance ``n`` is the container ``<container_prefix><n>`` publishing
    ``base_port + n``. The docker SDK is synchronous, so every call runs in
    the default executor.
    """

    def __init__(
        self,
        docker_host: Optional[str] = None,
        network: str = "fleet-network",
        image_name: str = "fleet-app:latest",
        base_port: int = 3000,
        container_prefix: str = "fleet-app-",
        label_namespace: str = "fleet",
        environment: Optional[Dict[str, str]] = None,
        volumes: Optional[List[str]] = None,
        restart_policy: str = "unless-stopped",
        start_timeout: float = 30.0,
        stop_grace_period: int = 30,
        poll_interval: float = 1.0,
        host: str = "localhost",
        client: Optional[docker.DockerClient] = None
    ):
        """Initialize Docker orchestrator.

        Args:
            docker_host: Docker daemon URL; environment defaults when None
            network: Network new containers join
            image_name: Image new containers run
            base_port: Port of instance 0
            container_prefix: Container name prefix
            label_namespace: Prefix of the labels put on managed containers
            environment: Environment variables for every container
            volumes: Bind mounts (``host:container[:mode]``) for every container
            restart_policy: Docker restart policy name
            start_timeout: Seconds to wait for a new container to turn healthy
            stop_grace_period: Seconds a container gets to exit before it is killed
            poll_interval: Seconds between health polls while starting
            host: Host name used in instance URLs
            client: Pre-built docker client
        """
        self.docker_host = docker_host
        self.network = network
        self.image_name = image_name
        self.base_port = base_port
        self.container_prefix = container_prefix
        self.label_namespace = label_namespace
        self.environment = dict(environment or {})
        self.volumes = list(volumes or [])
        self.restart_policy = restart_policy
        self.start_timeout = start_timeout
        self.stop_grace_period = stop_grace_period
        self.poll_interval = poll_interval
        self.host = host
        self._client = client

        self._index_pattern = re.compile(rf"^/?{re.escape(container_prefix)}(\d+)$")

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise OrchestratorUnavailableError(self.docker_host or "environment default", e)
        return self._client

    def _label(self, key: str) -> str:
        return f"{self.label_namespace}.{key}"

    async def _run(self, func: Callable, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def instance_name(self, index: int) -> str:
        return f"{self.container_prefix}{index}"

    async def start_instance(
        self,
        service_name: str,
        index: int = 0,
        environment: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
        resource_limits: Optional[ResourceLimits] = None
    ) -> InstanceDescriptor:
        instance_id = self.instance_name(index)
        port = self.base_port + index

        try:
            existing = await self._get_container(instance_id)
            if existing is not None:
                if existing.status != "running":
                    logger.info(f"Restarting existing container {instance_id}")
                    await self._run(existing.start)
                    await self._run(existing.reload)
                return self._describe(existing)

            container = await self._create_container(
                service_name, instance_id, index, port,
                environment, labels, resource_limits or ResourceLimits()
            )
            await self._run(container.start)
            try:
                await self._wait_for_healthy(container, instance_id)
            except OrchestratorError:
                await self._discard(container, instance_id)
                raise
            await self._run(container.reload)
        except DockerException as e:
            logger.error(f"Failed to start container {instance_id} on port {port}: {e}")
            raise OrchestratorError(f"Failed to start instance {instance_id}: {e}", "START_FAILED")

        logger.info(f"Container started: {instance_id} ({container.short_id}) on port {port}, image {self.image_name}")
        return self._describe(container)

    async def _create_container(
        self,
        service_name: str,
        instance_id: str,
        index: int,
        port: int,
        environment: Optional[Dict[str, str]],
        labels: Optional[Dict[str, str]],
        limits: ResourceLimits
    ):
        env = {
            **self.environment,
            'INSTANCE_ID': instance_id,
            'INSTANCE_INDEX': str(index),
            'PORT': str(port),
            **(environment or {}),
        }
        container_labels = {
            self._label('service'): service_name,
            self._label('managed'): 'true',
            self._label('instance.id'): instance_id,
            self._label('instance.index'): str(index),
            **(labels or {}),
        }
        options: Dict[str, Any] = dict(
            name=instance_id,
            environment=env,
            labels=container_labels,
            ports={f"{port}/tcp": port},
            restart_policy={'Name': self.restart_policy},
            network=self.network,
            mem_limit=limits.memory_bytes,
            cpu_shares=limits.cpu_shares,
            volumes=list(self.volumes),
            healthcheck={
                'test': ['CMD', 'curl', '-f', f'http://localhost:{port}/health'],
                'interval': HEALTHCHECK_INTERVAL * _NANOSECONDS,
                'timeout': HEALTHCHECK_TIMEOUT * _NANOSECONDS,
                'retries': HEALTHCHECK_RETRIES,
                'start_period': HEALTHCHECK_START_PERIOD * _NANOSECONDS,
            },
            detach=True,
        )
        if limits.nano_cpus:
            options['nano_cpus'] = limits.nano_cpus

        logger.debug(f"Creating container {instance_id} from {self.image_name}")
        return await self._run(self.client.containers.create, self.image_name, **options)

    async def _wait_for_healthy(self, container, instance_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout

        while loop.time() < deadline:
            await self._run(container.reload)
            state = container.attrs.get('State', {})
            if (state.get('Health') or {}).get('Status') == 'healthy':
                return
            if state.get('Status') != 'running':
                raise OrchestratorError(
                    f"Container {instance_id} left running state: {state.get('Status')}",
                    "CONTAINER_NOT_RUNNING"
                )
            await asyncio.sleep(self.poll_interval)

        raise InstanceStartTimeoutError(instance_id, self.start_timeout)

    async def _discard(self, container, instance_id: str) -> None:
        try:
            await self._run(container.remove, force=True)
            logger.info(f"Removed container {instance_id} after failed start")
        except DockerException as e:
            logger.error(f"Failed to remove container {instance_id}: {e}")

    async def stop_instance(self, instance_id: str) -> bool:
        try:
            container = await self._get_container(instance_id)
            if container is None:
                logger.warning(f"Container to stop does not exist: {instance_id}")
                return True

            if container.status == "running":
                await self._run(container.stop, timeout=self.stop_grace_period)
            await self._run(container.remove)
        except DockerException as e:
            logger.error(f"Failed to stop container {instance_id}: {e}")
            raise OrchestratorError(f"Failed to stop instance {instance_id}: {e}", "STOP_FAILED")

        logger.info(f"Container stopped: {instance_id}")
        return True

    async def get_running_instances(self, service_name: str) -> List[InstanceDescriptor]:
        try:
            containers = await self._run(
                self.client.containers.list,
                filters={'label': f"{self._label('service')}={service_name}", 'status': 'running'}
            )
        except DockerException as e:
            logger.error(f"Failed to list containers for {service_name}: {e}")
            raise OrchestratorError(f"Failed to list instances of {service_name}: {e}", "LIST_FAILED")
        return sorted((self._describe(c) for c in containers), key=lambda d: d.index)

    async def get_instance_details(self, instance_id: str) -> Dict[str, Any]:
        container = await self._get_container(instance_id)
        if container is None:
            raise InstanceNotFoundError(instance_id)

        descriptor = self._describe(container)
        attrs = container.attrs
        state = attrs.get('State', {})
        host_config = attrs.get('HostConfig', {})
        return {
            'id': descriptor.id,
            'url': descriptor.url,
            'port': descriptor.port,
            'index': descriptor.index,
            'container_id': descriptor.container_id,
            'status': descriptor.status,
            'healthy': descriptor.healthy,
            'metadata': descriptor.metadata,
            'state': state,
            'health': state.get('Health'),
            'restart_count': attrs.get('RestartCount', 0),
            'created': attrs.get('Created'),
            'started_at': state.get('StartedAt'),
            'finished_at': state.get('FinishedAt'),
            'resources': {
                'memory': host_config.get('Memory'),
                'cpu_shares': host_config.get('CpuShares'),
                'cpu_quota': host_config.get('CpuQuota'),
            },
            'network': attrs.get('NetworkSettings', {}),
        }

    async def health_check(self) -> Dict[str, Any]:
        try:
            version = await self._run(self.client.version)
            networks = await self._run(self.client.networks.list, names=[self.network])
            try:
                await self._run(self.client.images.get, self.image_name)
                image_exists = True
            except ImageNotFound:
                image_exists = False
            containers = await self._run(self.client.containers.list, all=True)
        except (DockerException, OrchestratorUnavailableError) as e:
            logger.warning(f"Docker health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}

        counts = {'total': len(containers), 'running': 0, 'stopped': 0}
        for container in containers:
            if container.status == 'running':
                counts['running'] += 1
            elif container.status in ('exited', 'stopped'):
                counts['stopped'] += 1

        return {
            'status': 'healthy',
            'details': {
                'docker_version': version.get('Version'),
                'api_version': version.get('ApiVersion'),
                'network_exists': any(n.name == self.network for n in networks),
                'image_exists': image_exists,
                'containers': counts,
            }
        }

    async def _get_container(self, name: str):
        try:
            return await self._run(self.client.containers.get, name)
        except NotFound:
            return None

    def _extract_index(self, container) -> int:
        labels = container.attrs.get('Config', {}).get('Labels') or {}
        raw = labels.get(self._label('instance.index'))
        if raw is not None and str(raw).isdigit():
            return int(raw)
        match = self._index_pattern.match(container.name or "")
        return int(match.group(1)) if match else 0

    def _describe(self, container) -> InstanceDescriptor:
        attrs = container.attrs
        index = self._extract_index(container)
        port = self.base_port + index

        bindings = (attrs.get('NetworkSettings', {}).get('Ports') or {}).get(f"{port}/tcp") or []
        if bindings:
            host_ip = bindings[0].get('HostIp')
            host = self.host if host_ip in (None, '', '0.0.0.0', '::') else host_ip
            port = int(bindings[0].get('HostPort') or port)
        else:
            host = self.host

        state = attrs.get('State', {})
        config = attrs.get('Config', {})
        return InstanceDescriptor(
            id=(attrs.get('Name') or container.name or "").lstrip('/'),
            url=f"http://{host}:{port}",
            port=port,
            index=index,
            healthy=(state.get('Health') or {}).get('Status') == 'healthy',
            container_id=container.id,
            status=state.get('Status', container.status),
            metadata={
                'image': config.get('Image'),
                'created': attrs.get('Created'),
                'labels': config.get('Labels') or {},
            }
        )

    def get_config(self) -> Dict[str, Any]:
        return {
            'type': type(self).__name__,
            'docker_host': self.docker_host,
            'network': self.network,
            'image_name': self.image_name,
            'base_port': self.base_port,
            'container_prefix': self.container_prefix,
            'label_namespace': self.label_namespace,
            'environment': dict(self.environment),
            'volumes': list(self.volumes),
            'restart_policy': self.restart_policy,
            'start_timeout': self.start_timeout,
            'stop_grace_period': self.stop_grace_period,
        }
