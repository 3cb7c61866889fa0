"""Pytest configuration and shared fixtures."""

import pytest
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fleet_autoscaler.core.config import AutoscalingConfig
from fleet_autoscaler.core.exceptions import InstanceNotFoundError, OrchestratorError
from fleet_autoscaler.core.types import HostMetrics, InstanceDescriptor, MetricsSnapshot
from fleet_autoscaler.monitoring.metrics import MetricsCollector
from fleet_autoscaler.orchestration.base import ContainerOrchestrator, ResourceLimits
from fleet_autoscaler.scaling.load_balancer import LoadBalancer


class FakeOrchestrator(ContainerOrchestrator):
    """In-memory orchestrator recording every start and stop."""

    def __init__(self, base_port: int = 3000, fail_on_start: Optional[int] = None,
                 fail_on_stop: Optional[int] = None, hold_on_start: Optional[int] = None):
        self.base_port = base_port
        self.fail_on_start = fail_on_start
        self.fail_on_stop = fail_on_stop
        self.hold_on_start = hold_on_start
        self.released = asyncio.Event()
        self.running: Dict[str, InstanceDescriptor] = {}
        self.start_calls: List[Dict[str, Any]] = []
        self.stop_calls: List[str] = []

    def seed(self, *indices: int) -> None:
        for index in indices:
            descriptor = self._descriptor(index)
            self.running[descriptor.id] = descriptor

    def _descriptor(self, index: int) -> InstanceDescriptor:
        port = self.base_port + index
        return InstanceDescriptor(
            id=f"app-{index}",
            url=f"http://127.0.0.1:{port}",
            port=port,
            index=index,
            healthy=True,
            container_id=f"container-{index}",
            status="running"
        )

    async def start_instance(self, service_name: str, index: int = 0, environment=None,
                             labels=None, resource_limits: Optional[ResourceLimits] = None):
        self.start_calls.append({'service_name': service_name, 'index': index,
                                 'resource_limits': resource_limits})
        if self.fail_on_start is not None and len(self.start_calls) >= self.fail_on_start:
            raise OrchestratorError(f"start of index {index} failed", "START_FAILED")
        if self.hold_on_start is not None and len(self.start_calls) >= self.hold_on_start:
            await self.released.wait()
        descriptor = self._descriptor(index)
        self.running[descriptor.id] = descriptor
        return descriptor

    async def stop_instance(self, instance_id: str) -> bool:
        self.stop_calls.append(instance_id)
        if self.fail_on_stop is not None and len(self.stop_calls) >= self.fail_on_stop:
            raise OrchestratorError(f"stop of {instance_id} failed", "STOP_FAILED")
        self.running.pop(instance_id, None)
        return True

    async def get_running_instances(self, service_name: str) -> List[InstanceDescriptor]:
        return sorted(self.running.values(), key=lambda d: d.index)

    async def get_instance_details(self, instance_id: str) -> Dict[str, Any]:
        if instance_id not in self.running:
            raise InstanceNotFoundError(instance_id)
        return {'id': instance_id, 'status': 'running'}

    async def health_check(self) -> Dict[str, Any]:
        return {'status': 'healthy', 'details': {'containers': {'running': len(self.running)}}}


class StaticSampler:
    """Host sampler returning whatever cpu/memory values are set on it."""

    def __init__(self, cpu_usage: float = 0.5, memory_usage: float = 0.5):
        self.cpu_usage = cpu_usage
        self.memory_usage = memory_usage
        self.calls = 0

    def __call__(self) -> HostMetrics:
        self.calls += 1
        return HostMetrics(
            cpu_usage=self.cpu_usage,
            memory_usage=self.memory_usage,
            total_memory=8 * 1024 ** 3,
            used_memory=int(self.memory_usage * 8 * 1024 ** 3),
            timestamp=datetime.now()
        )


@pytest.fixture
def fake_orchestrator():
    """Empty in-memory orchestrator."""
    return FakeOrchestrator()


@pytest.fixture
def static_sampler():
    """Sampler reporting 50% cpu and memory until changed."""
    return StaticSampler()


@pytest.fixture
def metrics_collector(static_sampler):
    """Metrics collector fed by the static sampler."""
    return MetricsCollector(collection_interval=3600, retention_period=3600, sampler=static_sampler)


@pytest.fixture
def load_balancer():
    """Load balancer whose periodic health checks never fire during a test."""
    return LoadBalancer(health_check_interval=3600, health_check_timeout=1.0, retry_backoff=0.0)


@pytest.fixture
def autoscaling_config():
    """Small autoscaling configuration with a slow evaluation tick."""
    return AutoscalingConfig(
        service_name="app",
        min_instances=1,
        max_instances=10,
        initial_instances=2,
        metrics_interval=3600,
        health_check_interval=3600,
        evaluation_interval=3600
    )


@pytest.fixture
def busy_snapshot():
    """Snapshot of a heavily loaded host."""
    return MetricsSnapshot(cpu_usage=0.9, memory_usage=0.92, request_rate=950.0,
                           avg_response_time=4500.0)


@pytest.fixture
def idle_snapshot():
    """Snapshot of an almost idle host."""
    return MetricsSnapshot(cpu_usage=0.1, memory_usage=0.1, request_rate=10.0,
                           avg_response_time=50.0)


@pytest.fixture
def make_orchestrator():
    """Factory for in-memory orchestrators configured to fail on a given call."""
    return FakeOrchestrator
