"""Autoscaling manager: the control loop tying metrics, policies, orchestrator and load balancer together."""

import asyncio
import logging
from collections import deque
from dataclasses import asdict
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence

from .load_balancer import LoadBalancer
from .policy import ScalingPolicy
from ..core.alerting import AlertQueue
from ..core.config import AutoscalingConfig
from ..core.exceptions import ConfigurationError, OrchestratorError, ScalingError
from ..core.types import (
    Alert, AlertSeverity, AlertType, Anomaly, InstanceDescriptor, ScaleEvent,
    ScaleEventType, ScalingDecision
)
from ..monitoring.metrics import MetricsCollector
from ..orchestration.base import ContainerOrchestrator, ResourceLimits


logger = logging.getLogger(__name__)

MAX_SCALE_HISTORY = 1000
MAX_ALERTS = 100
STATS_RECENT_EVENTS = 10
STATS_RECENT_ALERTS = 5


class AutoscalingManager:
    """Keeps the number of running instances in line with the scaling policies.

    Three loops run side by side: metrics collection, load balancer health
    checks, and the evaluation tick owned by this class. Scale actions are
    serialized by ``_scale_lock``; a tick that finds an action in flight is
    skipped, a manual call waits for it.
    """

    def __init__(
        self,
        config: Optional[AutoscalingConfig] = None,
        orchestrator: Optional[ContainerOrchestrator] = None,
        policies: Optional[Sequence[ScalingPolicy]] = None,
        metrics: Optional[MetricsCollector] = None,
        load_balancer: Optional[LoadBalancer] = None,
        resource_limits: Optional[ResourceLimits] = None
    ):
        """Initialize autoscaling manager.

        Args:
            config: Autoscaling configuration; defaults when None
            orchestrator: Container orchestrator; Docker from config when None
            policies: Scaling policies evaluated in order
            metrics: Metrics collector; built from config when None
            load_balancer: Load balancer; built from config when None
            resource_limits: Limits applied to newly started instances
        """
        self.config = config if config is not None else AutoscalingConfig()
        self.orchestrator = (
            orchestrator if orchestrator is not None else self.config.build_orchestrator()
        )
        self.policies: List[ScalingPolicy] = (
            list(policies) if policies is not None else self.config.build_policies()
        )
        self.metrics = metrics if metrics is not None else self.config.build_metrics_collector()
        self.load_balancer = (
            load_balancer if load_balancer is not None else self.config.build_load_balancer()
        )
        self.resource_limits = (
            resource_limits if resource_limits is not None else self.config.resource_limits()
        )

        self.service_name = self.config.service_name
        self.min_instances = self.config.min_instances
        self.max_instances = self.config.max_instances

        self.metrics.on_anomaly = self._on_anomaly_detected
        self.alerts = AlertQueue(max_size=MAX_ALERTS)

        self._current_instances = 0
        self._scale_history: Deque[ScaleEvent] = deque(maxlen=MAX_SCALE_HISTORY)
        self._scale_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._evaluation_task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def current_instances(self) -> int:
        return self._current_instances

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scale_in_progress(self) -> bool:
        return self._scale_lock.locked()

    async def start(self) -> None:
        """Start metrics, health checks and the evaluation tick, then reconcile instances."""
        if self._running:
            logger.warning("Autoscaling manager already running")
            return

        logger.info(
            f"Starting autoscaling for '{self.service_name}' "
            f"(min={self.min_instances}, max={self.max_instances}, policies={len(self.policies)})"
        )
        self._running = True
        self._started_at = datetime.now()
        self._stop_event.clear()

        await self.metrics.start_collection()
        await self.load_balancer.start_health_checks()
        self._evaluation_task = asyncio.create_task(self._evaluation_loop())
        await self._initialize_instances()

        logger.info(f"Autoscaling started with {self._current_instances} instances")

    async def stop(self) -> None:
        """Stop ticking; an in-flight scale action is allowed to finish."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        await self.load_balancer.stop_health_checks()
        await self.metrics.stop_collection()

        task, self._evaluation_task = self._evaluation_task, None
        if task is not None:
            await task

        # Wait out a manual scale that may still hold the lock.
        async with self._scale_lock:
            pass

        await self.load_balancer.close()
        logger.info("Autoscaling stopped")

    async def _evaluation_loop(self) -> None:
        interval = self.config.evaluation_interval
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break

            try:
                await self.check_scaling_conditions()
            except Exception as e:
                logger.error(f"Error in scaling evaluation: {e}")

    async def _initialize_instances(self) -> None:
        """Adopt running instances, or start the initial set if none run."""
        try:
            async with self._scale_lock:
                adopted = await self._adopt_running_instances()
                if adopted:
                    logger.info(f"Adopted {adopted} running instances of '{self.service_name}'")
                    bounded = max(self.min_instances, min(self.max_instances, adopted))
                    if bounded != adopted:
                        logger.warning(f"{adopted} running instances outside bounds, scaling to {bounded}")
                        await self._scale_to_instances(bounded)
                else:
                    await self._scale_to_instances(self.config.initial_instances)
        except Exception as e:
            self.alerts.push(
                AlertType.INSTANCE_INIT_FAILED,
                AlertSeverity.HIGH,
                f"Failed to initialize instances: {e}",
                {'current_instances': self._current_instances,
                 'initial_instances': self.config.initial_instances}
            )

    async def refresh_instances(self) -> int:
        """Sync ``current_instances`` and the load balancer with the runtime.

        Returns:
            Number of running instances
        """
        async with self._scale_lock:
            return await self._adopt_running_instances()

    async def _adopt_running_instances(self) -> int:
        running = await self.orchestrator.get_running_instances(self.service_name)
        for descriptor in running:
            if descriptor.id not in self.load_balancer:
                self._register_instance(descriptor)
        self._current_instances = len(running)
        return len(running)

    async def check_scaling_conditions(self) -> Optional[ScalingDecision]:
        """Run one evaluation tick.

        Returns:
            The decision acted on, or None when no policy asked to scale
        """
        if self._scale_lock.locked():
            logger.debug("Scale action in progress, skipping evaluation")
            return None

        snapshot = self.metrics.get_current_metrics()
        current = self._current_instances

        for policy in self.policies:
            decision = policy.should_scale_up(snapshot, current)
            if not decision.should_scale:
                decision = policy.should_scale_down(snapshot, current)
            if decision.should_scale:
                logger.info(f"Policy '{policy.name}' requests {decision.target_instances} instances: {decision.reason}")
                await self._execute_scale(decision.target_instances, decision.reason, policy=policy)
                return decision

        return None

    async def manual_scale(self, target_instances: int, reason: str = "manual scale") -> bool:
        """Scale to ``target_instances`` bypassing the policies.

        Returns:
            True if instances were started or stopped

        Raises:
            ScalingError: If the orchestrator failed part way through
        """
        return await self._execute_scale(target_instances, reason, manual=True)

    async def _execute_scale(
        self,
        target_instances: int,
        reason: str,
        policy: Optional[ScalingPolicy] = None,
        manual: bool = False
    ) -> bool:
        async with self._scale_lock:
            from_count = self._current_instances
            target = max(self.min_instances, min(self.max_instances, int(target_instances)))
            if target != target_instances:
                logger.info(f"Target {target_instances} clamped to {target}")
            if target == from_count:
                logger.debug(f"Already at {target} instances, nothing to do")
                return False

            scaling_up = target > from_count
            try:
                await self._scale_to_instances(target)
            except Exception as e:
                if manual:
                    alert_type = AlertType.MANUAL_SCALE_FAILED
                elif scaling_up:
                    alert_type = AlertType.SCALE_UP_FAILED
                else:
                    alert_type = AlertType.SCALE_DOWN_FAILED
                self.alerts.push(
                    alert_type,
                    AlertSeverity.HIGH,
                    f"Scaling from {from_count} to {target} instances failed: {e}",
                    {'from_instances': from_count,
                     'target_instances': target,
                     'current_instances': self._current_instances,
                     'policy': policy.name if policy else None,
                     'reason': reason}
                )
                if manual:
                    raise ScalingError(target, self._current_instances, e) from e
                return False

            if manual:
                event_type = ScaleEventType.MANUAL_SCALE_UP if scaling_up else ScaleEventType.MANUAL_SCALE_DOWN
            else:
                event_type = ScaleEventType.SCALE_UP if scaling_up else ScaleEventType.SCALE_DOWN

            self._scale_history.append(ScaleEvent(
                event_type=event_type,
                from_count=from_count,
                to_count=self._current_instances,
                reason=reason,
                policy_name=policy.name if policy else None
            ))
            if policy is not None:
                policy.update_last_scale_time()

            logger.info(f"Scaled '{self.service_name}' from {from_count} to {self._current_instances} ({event_type.value}): {reason}")
            return True

    async def _scale_to_instances(self, target: int) -> None:
        """Start or stop instances one at a time until ``target`` run.

        The load balancer and ``current_instances`` follow each completed
        start or stop, so a failure leaves both consistent with the runtime.
        """
        running = await self.orchestrator.get_running_instances(self.service_name)
        self._current_instances = len(running)
        delta = target - len(running)

        if delta > 0:
            used = {d.index for d in running}
            for index in self._free_indices(used, delta):
                descriptor = await self.orchestrator.start_instance(
                    self.service_name,
                    index=index,
                    resource_limits=self.resource_limits
                )
                self._register_instance(descriptor)
                self._current_instances += 1
        elif delta < 0:
            for descriptor in self._select_for_removal(running, -delta):
                stopped = await self.orchestrator.stop_instance(descriptor.id)
                if not stopped:
                    raise OrchestratorError(f"Orchestrator refused to stop {descriptor.id}", "STOP_FAILED")
                self.load_balancer.remove_instance(descriptor.id)
                self._current_instances -= 1

    @staticmethod
    def _free_indices(used: set, count: int) -> List[int]:
        indices = []
        candidate = 0
        while len(indices) < count:
            if candidate not in used:
                indices.append(candidate)
            candidate += 1
        return indices

    def _select_for_removal(self, running: List[InstanceDescriptor], count: int) -> List[InstanceDescriptor]:
        """Least-connected instances first; among equals the highest index."""
        def load(descriptor: InstanceDescriptor):
            record = self.load_balancer.get_instance(descriptor.id)
            connections = record.active_connections if record else 0
            return (connections, -descriptor.index)

        return sorted(running, key=load)[:count]

    def _register_instance(self, descriptor: InstanceDescriptor) -> None:
        self.load_balancer.add_instance(
            descriptor.id,
            descriptor.url,
            weight=descriptor.weight,
            metadata={
                'index': descriptor.index,
                'port': descriptor.port,
                'container_id': descriptor.container_id,
            }
        )

    def _on_anomaly_detected(self, anomalies: List[Anomaly]) -> None:
        for anomaly in anomalies:
            self.alerts.push(
                AlertType.SYSTEM_ANOMALY,
                anomaly.severity,
                anomaly.message,
                {'metric': anomaly.metric, 'value': anomaly.value}
            )

    def get_scale_history(self, limit: int = 50) -> List[ScaleEvent]:
        """Most recent ``limit`` scale events, oldest first."""
        if limit <= 0:
            return []
        return list(self._scale_history)[-limit:]

    def get_active_alerts(self) -> List[Alert]:
        return self.alerts.active()

    def clear_alert(self, alert_id: str) -> bool:
        return self.alerts.clear(alert_id)

    def get_stats(self) -> Dict[str, Any]:
        snapshot = self.metrics.get_current_metrics()
        current_metrics = asdict(snapshot)
        current_metrics['timestamp'] = snapshot.timestamp.isoformat()
        return {
            'service_name': self.service_name,
            'is_running': self._running,
            'started_at': self._started_at.isoformat() if self._started_at else None,
            'current_instances': self._current_instances,
            'min_instances': self.min_instances,
            'max_instances': self.max_instances,
            'scale_in_progress': self.scale_in_progress,
            'policies': [p.get_config() for p in self.policies],
            'current_metrics': current_metrics,
            'metrics': self.metrics.get_metrics_stats(),
            'load_balancer': self.load_balancer.get_stats(),
            'scale_history': [e.to_dict() for e in self.get_scale_history(STATS_RECENT_EVENTS)],
            'recent_alerts': [a.to_dict() for a in self.alerts.recent(STATS_RECENT_ALERTS)],
            'total_scale_events': len(self._scale_history),
            'total_alerts': len(self.alerts),
        }

    def get_config(self) -> Dict[str, Any]:
        return {
            'service_name': self.service_name,
            'min_instances': self.min_instances,
            'max_instances': self.max_instances,
            'initial_instances': self.config.initial_instances,
            'evaluation_interval': self.config.evaluation_interval,
            'policies': [p.get_config() for p in self.policies],
            'metrics': self.metrics.get_config(),
            'load_balancer': self.load_balancer.get_config(),
            'orchestrator': self.orchestrator.get_config(),
        }

    def update_config(
        self,
        min_instances: Optional[int] = None,
        max_instances: Optional[int] = None,
        policies: Optional[Sequence[ScalingPolicy]] = None
    ) -> None:
        """Replace bounds and/or policies; nothing changes if validation fails.

        Raises:
            ConfigurationError: If the new bounds are inconsistent
        """
        new_min = self.min_instances if min_instances is None else int(min_instances)
        new_max = self.max_instances if max_instances is None else int(max_instances)
        if new_min < 1:
            raise ConfigurationError("min_instances must be at least 1")
        if new_max < new_min:
            raise ConfigurationError(f"max_instances ({new_max}) must be >= min_instances ({new_min})")
        if policies is not None and not all(isinstance(p, ScalingPolicy) for p in policies):
            raise ConfigurationError("policies must be ScalingPolicy instances")

        self.min_instances = new_min
        self.max_instances = new_max
        if policies is not None:
            self.policies = list(policies)

        logger.info(
            f"Autoscaling config updated: min={self.min_instances}, max={self.max_instances}, "
            f"policies={[p.name for p in self.policies]}"
        )
