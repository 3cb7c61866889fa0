"""Core type definitions for the autoscaling subsystem."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field


class MetricKind(str, Enum):
    """Metric a scaling policy reacts to."""
    CPU = "cpu"
    MEMORY = "memory"
    REQUESTS = "requests"
    RESPONSE_TIME = "response_time"
    CUSTOM = "custom"


class LoadBalancingAlgorithm(str, Enum):
    """Instance selection algorithms."""
    ROUND_ROBIN = "round_robin"
    LEAST_CONNECTIONS = "least_connections"
    WEIGHTED_ROUND_ROBIN = "weighted_round_robin"
    IP_HASH = "ip_hash"


class ScaleEventType(str, Enum):
    """Kinds of committed scale actions."""
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    MANUAL_SCALE_UP = "manual_scale_up"
    MANUAL_SCALE_DOWN = "manual_scale_down"


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Types of alerts raised by the manager."""
    SCALE_UP_FAILED = "scale_up_failed"
    SCALE_DOWN_FAILED = "scale_down_failed"
    MANUAL_SCALE_FAILED = "manual_scale_failed"
    SYSTEM_ANOMALY = "system_anomaly"
    INSTANCE_INIT_FAILED = "instance_init_failed"


@dataclass(frozen=True)
class MetricSample:
    """Single immutable observation of a named metric."""
    name: str
    value: float
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HostMetrics:
    """One sample of host resource usage."""
    cpu_usage: float
    memory_usage: float
    total_memory: int = 0
    used_memory: int = 0
    network_rx: float = 0.0
    network_tx: float = 0.0
    disk_read: float = 0.0
    disk_write: float = 0.0
    load_average: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class MetricsSnapshot:
    """Aggregate view of recent metrics used for scaling decisions.

    cpu_usage and memory_usage are fractions in 0..1, request_rate is in
    requests per minute and avg_response_time in milliseconds.
    """
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    request_rate: float = 0.0
    avg_response_time: float = 0.0
    error_rate: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Anomaly:
    """Threshold breach detected during a collection cycle."""
    metric: str
    severity: AlertSeverity
    message: str
    value: float


@dataclass
class ScalingDecision:
    """Outcome of a single policy evaluation."""
    should_scale: bool
    reason: str
    target_instances: Optional[int] = None
    policy_name: Optional[str] = None


@dataclass
class ScalingPolicyConfig:
    """Tunables of a scaling policy."""
    name: str = "default"
    metric_kind: MetricKind = MetricKind.CPU
    scale_up_threshold: float = 0.8
    scale_down_threshold: float = 0.3
    cooldown_period: float = 300.0  # seconds
    min_instances: int = 1
    max_instances: int = 10
    scale_factor: float = 1.5
    enabled: bool = True
    max_request_rate: float = 1000.0  # requests per minute treated as full load
    last_scale_time: Optional[datetime] = None


@dataclass
class InstanceRecord:
    """Load balancer view of one backend instance."""
    instance_id: str
    base_url: str
    weight: int = 1
    healthy: bool = True
    active_connections: int = 0
    last_health_check: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'url': self.base_url,
            'weight': self.weight,
            'healthy': self.healthy,
            'connections': self.active_connections,
            'last_health_check': self.last_health_check.isoformat(),
            'metadata': self.metadata,
        }


@dataclass
class InstanceDescriptor:
    """Orchestrator view of one started instance."""
    id: str
    url: str
    port: int
    index: int
    healthy: bool = False
    container_id: Optional[str] = None
    status: str = "unknown"
    weight: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScaleEvent:
    """Audit record of a committed scale action."""
    event_type: ScaleEventType
    from_count: int
    to_count: int
    reason: str
    policy_name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.event_type.value,
            'from_instances': self.from_count,
            'to_instances': self.to_count,
            'reason': self.reason,
            'policy': self.policy_name,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class Alert:
    """Operator-facing notification."""
    alert_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.alert_id,
            'type': self.alert_type.value,
            'severity': self.severity.value,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class ProxyRequest:
    """Incoming request to forward to a backend instance."""
    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    client_ip: Optional[str] = None
    protocol: str = "http"
    host: Optional[str] = None


@dataclass
class ProxyResponse:
    """Result of a proxied request."""
    status: int
    body: Any
    instance_id: Optional[str] = None
    attempts: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


SERVICE_UNAVAILABLE_BODY: Dict[str, str] = {
    'error': 'Service Unavailable',
    'message': 'No backend instance could serve the request',
}

__all__: List[str] = [
    "MetricKind", "LoadBalancingAlgorithm", "ScaleEventType", "AlertSeverity",
    "AlertType", "MetricSample", "HostMetrics", "MetricsSnapshot", "Anomaly",
    "ScalingDecision", "ScalingPolicyConfig", "InstanceRecord",
    "InstanceDescriptor", "ScaleEvent", "Alert", "ProxyRequest",
    "ProxyResponse", "SERVICE_UNAVAILABLE_BODY",
]
