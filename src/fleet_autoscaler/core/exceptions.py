"""Custom exceptions for the fleet autoscaler."""

from typing import Optional


class AutoscalerError(Exception):
    """Base exception for the fleet autoscaler."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class ConfigurationError(AutoscalerError):
    """Raised when configuration is invalid."""
    pass


class InvalidPolicyError(ConfigurationError):
    """Raised when a scaling policy has inconsistent thresholds or bounds."""

    def __init__(self, policy: str, reason: str):
        super().__init__(
            f"Invalid scaling policy '{policy}': {reason}",
            error_code="INVALID_POLICY"
        )
        self.policy = policy
        self.reason = reason


class NoHealthyInstanceError(AutoscalerError):
    """Raised when the load balancer has no healthy instance to route to."""

    def __init__(self, total_instances: int = 0):
        super().__init__(
            f"No healthy instance available ({total_instances} registered)",
            error_code="NO_HEALTHY_INSTANCE"
        )
        self.total_instances = total_instances


class OrchestratorError(AutoscalerError):
    """Raised when the container orchestrator fails an operation."""
    pass


class OrchestratorUnavailableError(OrchestratorError):
    """Raised when the container runtime cannot be reached."""

    def __init__(self, endpoint: str, original_error: Exception):
        super().__init__(
            f"Container runtime at {endpoint} is unavailable: {original_error}",
            error_code="ORCHESTRATOR_UNAVAILABLE"
        )
        self.endpoint = endpoint
        self.original_error = original_error


class InstanceNotFoundError(OrchestratorError):
    """Raised when an instance does not exist in the runtime."""

    def __init__(self, instance_id: str):
        super().__init__(
            f"Instance not found: {instance_id}",
            error_code="INSTANCE_NOT_FOUND"
        )
        self.instance_id = instance_id


class InstanceStartTimeoutError(OrchestratorError):
    """Raised when an instance does not become healthy in time."""

    def __init__(self, instance_id: str, timeout_seconds: float):
        super().__init__(
            f"Instance {instance_id} did not become healthy within {timeout_seconds}s",
            error_code="INSTANCE_START_TIMEOUT"
        )
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds


class ScalingError(AutoscalerError):
    """Raised when a scale action fails part way through."""

    def __init__(self, target_instances: int, current_instances: int, original_error: Exception):
        super().__init__(
            f"Scaling to {target_instances} instances failed at {current_instances}: {original_error}",
            error_code="SCALING_FAILED"
        )
        self.target_instances = target_instances
        self.current_instances = current_instances
        self.original_error = original_error


class MetricsError(AutoscalerError):
    """Raised when metrics collection fails."""
    pass
