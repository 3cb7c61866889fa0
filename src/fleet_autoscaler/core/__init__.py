"""Core types, errors, configuration and logging."""

from .types import MetricKind, MetricsSnapshot, ScalingPolicyConfig
from .exceptions import AutoscalerError, ConfigurationError
from .alerting import AlertQueue

__all__ = ["MetricKind", "MetricsSnapshot", "ScalingPolicyConfig",
           "AutoscalerError", "ConfigurationError", "AlertQueue"]
