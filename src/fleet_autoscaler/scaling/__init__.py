"""Scaling policies and load balancing.

``AutoscalingManager`` lives in ``scaling.auto_scaler`` and is re-exported
from the package root.
"""

from .policy import ScalingPolicy, CompositeScalingPolicy, cpu_policy, memory_policy, request_policy
from .load_balancer import LoadBalancer

__all__ = [
    "ScalingPolicy",
    "CompositeScalingPolicy",
    "cpu_policy",
    "memory_policy",
    "request_policy",
    "LoadBalancer",
]
