#!/usr/bin/env python3
"""Autoscaling demonstration with in-process backends and a simulated load curve."""

import asyncio
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import math
import random
import logging
from typing import Dict, List

from aiohttp import web

from fleet_autoscaler import AutoscalingConfig, AutoscalingManager
from fleet_autoscaler.core.types import HostMetrics, InstanceDescriptor, ProxyRequest
from fleet_autoscaler.monitoring.metrics import MetricsCollector
from fleet_autoscaler.orchestration.base import ContainerOrchestrator
from fleet_autoscaler.scaling.policy import cpu_policy


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BASE_PORT = 18000


class LocalServerOrchestrator(ContainerOrchestrator):
    """Runs each instance as an aiohttp site on localhost."""

    def __init__(self):
        self.runners: Dict[str, web.AppRunner] = {}
        self.descriptors: Dict[str, InstanceDescriptor] = {}

    async def start_instance(self, service_name, index=0, environment=None, labels=None,
                             resource_limits=None) -> InstanceDescriptor:
        instance_id = f"{service_name}-{index}"
        port = BASE_PORT + index

        async def health(request):
            return web.json_response({'status': 'healthy'})

        async def work(request):
            return web.json_response({'served_by': instance_id})

        app = web.Application()
        app.router.add_get('/health', health)
        app.router.add_get('/work', work)

        runner = web.AppRunner(app)
        await runner.setup()
        await web.TCPSite(runner, '127.0.0.1', port).start()

        descriptor = InstanceDescriptor(
            id=instance_id, url=f"http://127.0.0.1:{port}", port=port,
            index=index, healthy=True, status="running"
        )
        self.runners[instance_id] = runner
        self.descriptors[instance_id] = descriptor
        logger.info(f"Local instance {instance_id} listening on {port}")
        return descriptor

    async def stop_instance(self, instance_id: str) -> bool:
        runner = self.runners.pop(instance_id, None)
        self.descriptors.pop(instance_id, None)
        if runner is not None:
            await runner.cleanup()
        return True

    async def get_running_instances(self, service_name: str) -> List[InstanceDescriptor]:
        return sorted(self.descriptors.values(), key=lambda d: d.index)

    async def get_instance_details(self, instance_id: str):
        return {'id': instance_id, 'status': 'running'}

    async def health_check(self):
        return {'status': 'healthy', 'details': {'instances': len(self.runners)}}


class LoadCurve:
    """Host sampler following a daily-traffic shaped curve, diluted by instance count."""

    def __init__(self, orchestrator: LocalServerOrchestrator, period: int = 40):
        self.orchestrator = orchestrator
        self.period = period
        self.tick = 0

    def __call__(self) -> HostMetrics:
        self.tick += 1
        demand = 1.2 + math.sin(2 * math.pi * self.tick / self.period)  # 0.2 .. 2.2 instances worth
        instances = max(1, len(self.orchestrator.runners))
        cpu = min(0.99, demand / instances + random.uniform(-0.03, 0.03))
        return HostMetrics(cpu_usage=max(0.01, cpu), memory_usage=0.4)


async def demonstrate_autoscaling():
    """Drive the autoscaler through one load cycle."""
    print("Fleet Autoscaler Demonstration")
    print("=" * 40)

    orchestrator = LocalServerOrchestrator()
    metrics = MetricsCollector(collection_interval=0.5, retention_period=120, sampler=LoadCurve(orchestrator))
    config = AutoscalingConfig(
        service_name="demo",
        min_instances=1,
        max_instances=4,
        initial_instances=1,
        health_check_interval=2,
        evaluation_interval=2
    )
    manager = AutoscalingManager(
        config,
        orchestrator=orchestrator,
        policies=[cpu_policy(min_instances=1, max_instances=4, cooldown_period=4)],
        metrics=metrics
    )

    await manager.start()
    try:
        for second in range(40):
            await asyncio.sleep(1)
            response = await manager.load_balancer.proxy_request(ProxyRequest(path="/work"))
            metrics.record_request(response_time=5.0, status_code=response.status)

            if second % 5 == 4:
                stats = manager.get_stats()
                print(f"t={second + 1:>2}s instances={stats['current_instances']} "
                      f"cpu={stats['current_metrics']['cpu_usage']:.0%} "
                      f"last response from {response.instance_id}")
    finally:
        await manager.stop()
        for instance_id in list(orchestrator.runners):
            await orchestrator.stop_instance(instance_id)

    print("\nScale history:")
    for event in manager.get_scale_history():
        print(f"  {event.timestamp:%H:%M:%S} {event.event_type.value}: "
              f"{event.from_count} -> {event.to_count} ({event.reason})")


if __name__ == "__main__":
    asyncio.run(demonstrate_autoscaling())
