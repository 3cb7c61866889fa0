"""Tests for the Docker orchestrator."""

import pytest
from unittest.mock import MagicMock

from docker.errors import DockerException, ImageNotFound, NotFound

from fleet_autoscaler.core.exceptions import (
    InstanceNotFoundError, InstanceStartTimeoutError, OrchestratorError
)
from fleet_autoscaler.orchestration.base import ResourceLimits
from fleet_autoscaler.orchestration.docker_orchestrator import DockerContainerOrchestrator


def make_container(name: str, index: int, status: str = "running", health: str = "healthy",
                   port: int = None):
    """Container double shaped like ``docker.models.containers.Container``."""
    port = port or 3000 + index
    container = MagicMock()
    container.name = name
    container.id = f"{name}-full-id"
    container.short_id = f"{name}-id"
    container.status = status
    container.attrs = {
        'Name': f"/{name}",
        'Created': "2024-01-01T00:00:00Z",
        'RestartCount': 0,
        'State': {'Status': status, 'Health': {'Status': health}, 'StartedAt': "2024-01-01T00:00:01Z"},
        'Config': {'Image': "fleet-app:latest", 'Labels': {'fleet.instance.index': str(index)}},
        'HostConfig': {'Memory': 536870912, 'CpuShares': 1024, 'CpuQuota': 0},
        'NetworkSettings': {'Ports': {f"{port}/tcp": [{'HostIp': "0.0.0.0", 'HostPort': str(port)}]}},
    }
    return container


@pytest.fixture
def docker_client():
    """Docker client double with no containers."""
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    return client


@pytest.fixture
def orchestrator(docker_client):
    """Orchestrator that polls without delay."""
    return DockerContainerOrchestrator(client=docker_client, poll_interval=0, start_timeout=1.0)


class TestStartInstance:
    """Test starting instances."""

    @pytest.mark.asyncio
    async def test_creates_new_container(self, orchestrator, docker_client):
        container = make_container("fleet-app-2", 2)
        docker_client.containers.create.return_value = container

        descriptor = await orchestrator.start_instance(
            "api", index=2, environment={'EXTRA': "1"},
            resource_limits=ResourceLimits(memory_bytes=256 * 1024 * 1024, cpu_shares=512)
        )

        args, kwargs = docker_client.containers.create.call_args
        assert args == ("fleet-app:latest",)
        assert kwargs['name'] == "fleet-app-2"
        assert kwargs['ports'] == {"3002/tcp": 3002}
        assert kwargs['environment']['INSTANCE_ID'] == "fleet-app-2"
        assert kwargs['environment']['INSTANCE_INDEX'] == "2"
        assert kwargs['environment']['PORT'] == "3002"
        assert kwargs['environment']['EXTRA'] == "1"
        assert kwargs['labels']['fleet.service'] == "api"
        assert kwargs['labels']['fleet.managed'] == "true"
        assert kwargs['labels']['fleet.instance.index'] == "2"
        assert kwargs['restart_policy'] == {'Name': "unless-stopped"}
        assert kwargs['mem_limit'] == 256 * 1024 * 1024
        assert kwargs['cpu_shares'] == 512
        assert kwargs['network'] == "fleet-network"
        assert kwargs['healthcheck']['test'] == ['CMD', 'curl', '-f', 'http://localhost:3002/health']
        assert kwargs['healthcheck']['retries'] == 3
        assert kwargs['healthcheck']['interval'] == 30 * 1_000_000_000
        container.start.assert_called_once()

        assert descriptor.id == "fleet-app-2"
        assert descriptor.url == "http://localhost:3002"
        assert descriptor.port == 3002
        assert descriptor.index == 2
        assert descriptor.healthy

    @pytest.mark.asyncio
    async def test_restarts_stopped_container(self, orchestrator, docker_client):
        existing = make_container("fleet-app-0", 0, status="exited")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = existing

        descriptor = await orchestrator.start_instance("api", index=0)

        existing.start.assert_called_once()
        docker_client.containers.create.assert_not_called()
        assert descriptor.id == "fleet-app-0"

    @pytest.mark.asyncio
    async def test_running_container_is_returned_as_is(self, orchestrator, docker_client):
        existing = make_container("fleet-app-1", 1)
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = existing

        descriptor = await orchestrator.start_instance("api", index=1)

        existing.start.assert_not_called()
        assert descriptor.port == 3001

    @pytest.mark.asyncio
    async def test_times_out_waiting_for_health(self, docker_client):
        orchestrator = DockerContainerOrchestrator(client=docker_client, poll_interval=0.01, start_timeout=0.05)
        container = make_container("fleet-app-0", 0, health="starting")
        docker_client.containers.create.return_value = container

        with pytest.raises(InstanceStartTimeoutError) as exc_info:
            await orchestrator.start_instance("api", index=0)

        assert exc_info.value.instance_id == "fleet-app-0"
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_container_exiting_while_starting(self, orchestrator, docker_client):
        container = make_container("fleet-app-0", 0, status="exited", health="unhealthy")
        docker_client.containers.create.return_value = container

        with pytest.raises(OrchestratorError, match="left running state"):
            await orchestrator.start_instance("api", index=0)

        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_failed_cleanup_keeps_start_error(self, orchestrator, docker_client):
        container = make_container("fleet-app-0", 0, status="exited", health="unhealthy")
        container.remove.side_effect = DockerException("removal in progress")
        docker_client.containers.create.return_value = container

        with pytest.raises(OrchestratorError) as exc_info:
            await orchestrator.start_instance("api", index=0)

        assert exc_info.value.error_code == "CONTAINER_NOT_RUNNING"

    @pytest.mark.asyncio
    async def test_runtime_error_is_wrapped(self, orchestrator, docker_client):
        docker_client.containers.create.side_effect = DockerException("image pull failed")

        with pytest.raises(OrchestratorError) as exc_info:
            await orchestrator.start_instance("api", index=0)

        assert exc_info.value.error_code == "START_FAILED"


class TestStopInstance:
    """Test stopping instances."""

    @pytest.mark.asyncio
    async def test_missing_container_counts_as_stopped(self, orchestrator):
        assert await orchestrator.stop_instance("fleet-app-9")

    @pytest.mark.asyncio
    async def test_drains_then_removes(self, orchestrator, docker_client):
        container = make_container("fleet-app-0", 0)
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        assert await orchestrator.stop_instance("fleet-app-0")

        container.stop.assert_called_once_with(timeout=30)
        container.remove.assert_called_once()

    @pytest.mark.asyncio
    async def test_stopped_container_is_only_removed(self, orchestrator, docker_client):
        container = make_container("fleet-app-0", 0, status="exited")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        await orchestrator.stop_instance("fleet-app-0")

        container.stop.assert_not_called()
        container.remove.assert_called_once()


class TestQueries:
    """Test listing, details and health."""

    @pytest.mark.asyncio
    async def test_running_instances_sorted_by_index(self, orchestrator, docker_client):
        docker_client.containers.list.return_value = [
            make_container("fleet-app-1", 1), make_container("fleet-app-0", 0)
        ]

        instances = await orchestrator.get_running_instances("api")

        docker_client.containers.list.assert_called_once_with(
            filters={'label': "fleet.service=api", 'status': "running"}
        )
        assert [i.index for i in instances] == [0, 1]
        assert instances[1].url == "http://localhost:3001"

    @pytest.mark.asyncio
    async def test_instance_details(self, orchestrator, docker_client):
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = make_container("fleet-app-3", 3)

        details = await orchestrator.get_instance_details("fleet-app-3")

        assert details['index'] == 3
        assert details['resources'] == {'memory': 536870912, 'cpu_shares': 1024, 'cpu_quota': 0}
        assert details['health'] == {'Status': "healthy"}

    @pytest.mark.asyncio
    async def test_instance_details_missing(self, orchestrator):
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.get_instance_details("fleet-app-7")

    @pytest.mark.asyncio
    async def test_health_check(self, orchestrator, docker_client):
        network = MagicMock()
        network.name = "fleet-network"
        docker_client.version.return_value = {'Version': "24.0.7", 'ApiVersion': "1.43"}
        docker_client.networks.list.return_value = [network]
        docker_client.images.get.side_effect = ImageNotFound("missing")
        docker_client.containers.list.return_value = [
            make_container("fleet-app-0", 0), make_container("fleet-app-1", 1, status="exited")
        ]

        health = await orchestrator.health_check()

        assert health['status'] == "healthy"
        assert health['details']['docker_version'] == "24.0.7"
        assert health['details']['network_exists']
        assert not health['details']['image_exists']
        assert health['details']['containers'] == {'total': 2, 'running': 1, 'stopped': 1}

    @pytest.mark.asyncio
    async def test_health_check_never_raises(self, orchestrator, docker_client):
        docker_client.version.side_effect = DockerException("daemon down")

        health = await orchestrator.health_check()

        assert health['status'] == "unhealthy"
        assert "daemon down" in health['error']

    def test_get_config(self, orchestrator):
        config = orchestrator.get_config()
        assert config['base_port'] == 3000
        assert config['container_prefix'] == "fleet-app-"
        assert config['restart_policy'] == "unless-stopped"
