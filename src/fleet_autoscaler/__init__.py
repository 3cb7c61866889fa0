"""
fleet-autoscaler: metric-driven autoscaling for containerized service fleets.

This package decides how many instances of a service should run, starts and
stops them through a container runtime and spreads traffic across the
healthy ones.
"""

from .core.types import (
    MetricKind, LoadBalancingAlgorithm, MetricsSnapshot, ScalingDecision,
    ScalingPolicyConfig, InstanceDescriptor, ScaleEvent, Alert, ProxyRequest,
    ProxyResponse
)
from .core.exceptions import (
    AutoscalerError, ConfigurationError, NoHealthyInstanceError,
    OrchestratorError, ScalingError
)
from .core.config import AutoscalingConfig, load_config
from .monitoring.metrics import MetricsCollector
from .scaling.policy import ScalingPolicy, CompositeScalingPolicy
from .scaling.load_balancer import LoadBalancer
from .scaling.auto_scaler import AutoscalingManager
from .orchestration.base import ContainerOrchestrator, ResourceLimits
from .orchestration.docker_orchestrator import DockerContainerOrchestrator

__version__ = "0.1.0"

__all__ = [
    # Control loop
    "AutoscalingManager",
    "AutoscalingConfig",
    "load_config",
    # Components
    "MetricsCollector",
    "ScalingPolicy",
    "CompositeScalingPolicy",
    "LoadBalancer",
    "ContainerOrchestrator",
    "DockerContainerOrchestrator",
    "ResourceLimits",
    # Data types
    "MetricKind",
    "LoadBalancingAlgorithm",
    "MetricsSnapshot",
    "ScalingDecision",
    "ScalingPolicyConfig",
    "InstanceDescriptor",
    "ScaleEvent",
    "Alert",
    "ProxyRequest",
    "ProxyResponse",
    # Errors
    "AutoscalerError",
    "ConfigurationError",
    "NoHealthyInstanceError",
    "OrchestratorError",
    "ScalingError",
]
