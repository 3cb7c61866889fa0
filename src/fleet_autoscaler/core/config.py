"""Configuration for the fleet autoscaler."""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigurationError
from .types import LoadBalancingAlgorithm, MetricKind, ScalingPolicyConfig
from ..monitoring.metrics import MetricsCollector
from ..orchestration.base import ResourceLimits
from ..orchestration.docker_orchestrator import DockerContainerOrchestrator
from ..scaling.load_balancer import LoadBalancer
from ..scaling.policy import CompositeScalingPolicy, ScalingPolicy


logger = logging.getLogger(__name__)

ENV_MAPPINGS = {
    'FLEET_AUTOSCALER_SERVICE_NAME': 'service_name',
    'FLEET_AUTOSCALER_MIN_INSTANCES': 'min_instances',
    'FLEET_AUTOSCALER_MAX_INSTANCES': 'max_instances',
    'FLEET_AUTOSCALER_INITIAL_INSTANCES': 'initial_instances',
    'FLEET_AUTOSCALER_METRICS_INTERVAL': 'metrics_interval',
    'FLEET_AUTOSCALER_EVALUATION_INTERVAL': 'evaluation_interval',
    'FLEET_AUTOSCALER_HEALTH_CHECK_INTERVAL': 'health_check_interval',
    'FLEET_AUTOSCALER_LOG_LEVEL': 'log_level',
    'FLEET_AUTOSCALER_LOG_FILE': 'log_file',
    'FLEET_AUTOSCALER_IMAGE': 'docker.image_name',
    'DOCKER_HOST': 'docker.host',
}

# Never parsed into numbers or booleans.
_STRING_PATHS = frozenset(('service_name', 'log_level', 'log_file', 'docker.image_name', 'docker.host'))

_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class PolicySettings(BaseModel):
    """One scaling policy entry.

    ``min_instances``/``max_instances`` default to the service bounds.
    """
    name: str = "default"
    metric_kind: MetricKind = MetricKind.CPU
    scale_up_threshold: float = Field(0.8, ge=0.0, le=1.0)
    scale_down_threshold: float = Field(0.3, ge=0.0, le=1.0)
    cooldown_period: float = Field(300.0, ge=0.0)
    min_instances: Optional[int] = Field(None, ge=1)
    max_instances: Optional[int] = Field(None, ge=1)
    scale_factor: float = Field(1.5, gt=1.0)
    enabled: bool = True
    max_request_rate: float = Field(1000.0, gt=0.0)

    @model_validator(mode='after')
    def check_thresholds(self) -> 'PolicySettings':
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError(
                f"policy '{self.name}': scale_down_threshold must be below scale_up_threshold"
            )
        if (self.min_instances is not None and self.max_instances is not None
                and self.max_instances < self.min_instances):
            raise ValueError(f"policy '{self.name}': max_instances must be >= min_instances")
        return self


class LoadBalancerSettings(BaseModel):
    """Load balancer tunables."""
    algorithm: LoadBalancingAlgorithm = LoadBalancingAlgorithm.ROUND_ROBIN
    health_check_timeout: float = Field(5.0, gt=0.0)
    max_retries: int = Field(3, ge=0)
    request_timeout: float = Field(30.0, gt=0.0)
    retry_backoff: float = Field(0.1, ge=0.0)


class DockerSettings(BaseModel):
    """Docker orchestrator settings."""
    host: Optional[str] = None
    network: str = "fleet-network"
    image_name: str = "fleet-app:latest"
    base_port: int = Field(3000, ge=1, le=65535)
    container_prefix: str = "fleet-app-"
    label_namespace: str = "fleet"
    environment: Dict[str, str] = Field(default_factory=dict)
    volumes: List[str] = Field(default_factory=list)
    restart_policy: str = "unless-stopped"
    start_timeout: float = Field(30.0, gt=0.0)
    stop_grace_period: int = Field(30, ge=0)
    memory_bytes: int = Field(512 * 1024 * 1024, gt=0)
    cpu_shares: int = Field(1024, gt=0)

    @field_validator('restart_policy')
    @classmethod
    def check_restart_policy(cls, value: str) -> str:
        if value not in ('no', 'always', 'unless-stopped', 'on-failure'):
            raise ValueError(f"unsupported restart policy: {value}")
        return value


class AutoscalingConfig(BaseModel):
    """Top-level autoscaler configuration."""
    service_name: str = "app"
    min_instances: int = Field(1, ge=1)
    max_instances: int = Field(10, ge=1)
    initial_instances: Optional[int] = Field(None, ge=1)
    metrics_interval: float = Field(30.0, gt=0.0)
    metrics_retention: float = Field(3600.0, gt=0.0)
    health_check_interval: float = Field(30.0, gt=0.0)
    evaluation_interval: float = Field(60.0, gt=0.0)
    policies: List[PolicySettings] = Field(default_factory=list)
    composite_policy: bool = False
    load_balancer: LoadBalancerSettings = Field(default_factory=LoadBalancerSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    structured_logging: bool = False

    @field_validator('log_level')
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return value

    @field_validator('service_name')
    @classmethod
    def check_service_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("service_name must not be empty")
        return value

    @model_validator(mode='after')
    def check_bounds(self) -> 'AutoscalingConfig':
        if self.max_instances < self.min_instances:
            raise ValueError("max_instances must be >= min_instances")
        if self.initial_instances is None:
            self.initial_instances = self.min_instances
        if not self.min_instances <= self.initial_instances <= self.max_instances:
            raise ValueError("initial_instances must lie within [min_instances, max_instances]")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AutoscalingConfig':
        """Build a validated config, raising ConfigurationError on bad input."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid autoscaling configuration: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    def build_policies(self) -> List[ScalingPolicy]:
        """Policy objects for the configured entries.

        With no entries a single default CPU policy bounded by the service
        limits is returned.
        """
        entries = self.policies or [PolicySettings()]
        policies = []
        for entry in entries:
            policies.append(ScalingPolicy(ScalingPolicyConfig(
                name=entry.name,
                metric_kind=entry.metric_kind,
                scale_up_threshold=entry.scale_up_threshold,
                scale_down_threshold=entry.scale_down_threshold,
                cooldown_period=entry.cooldown_period,
                min_instances=entry.min_instances or self.min_instances,
                max_instances=entry.max_instances or self.max_instances,
                scale_factor=entry.scale_factor,
                enabled=entry.enabled,
                max_request_rate=entry.max_request_rate
            )))

        if self.composite_policy and len(policies) > 1:
            return [CompositeScalingPolicy(
                policies,
                min_instances=self.min_instances,
                max_instances=self.max_instances
            )]
        return policies

    def build_metrics_collector(self) -> MetricsCollector:
        return MetricsCollector(
            collection_interval=self.metrics_interval,
            retention_period=self.metrics_retention
        )

    def build_load_balancer(self) -> LoadBalancer:
        lb = self.load_balancer
        return LoadBalancer(
            algorithm=lb.algorithm,
            health_check_interval=self.health_check_interval,
            health_check_timeout=lb.health_check_timeout,
            max_retries=lb.max_retries,
            request_timeout=lb.request_timeout,
            retry_backoff=lb.retry_backoff
        )

    def build_orchestrator(self) -> DockerContainerOrchestrator:
        d = self.docker
        return DockerContainerOrchestrator(
            docker_host=d.host,
            network=d.network,
            image_name=d.image_name,
            base_port=d.base_port,
            container_prefix=d.container_prefix,
            label_namespace=d.label_namespace,
            environment=d.environment,
            volumes=d.volumes,
            restart_policy=d.restart_policy,
            start_timeout=d.start_timeout,
            stop_grace_period=d.stop_grace_period
        )

    def resource_limits(self) -> ResourceLimits:
        return ResourceLimits(memory_bytes=self.docker.memory_bytes, cpu_shares=self.docker.cpu_shares)


def load_config(config_path: Optional[Union[str, Path]] = None) -> AutoscalingConfig:
    """Load configuration from a JSON or YAML file plus environment variables.

    Args:
        config_path: Path to a ``.json``, ``.yaml`` or ``.yml`` file; defaults only when None

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file cannot be read or the result is invalid
    """
    raw: Dict[str, Any] = {}
    if config_path:
        raw = _read_config_file(Path(config_path))
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.info("No config file given, using defaults and environment")

    merged = _merge_environment_variables(raw)
    return AutoscalingConfig.from_dict(merged)


def save_config(config: AutoscalingConfig, config_path: Union[str, Path]) -> None:
    """Write ``config`` as JSON or YAML depending on the file suffix."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.to_dict()
    with open(path, 'w') as f:
        if path.suffix.lower() in ('.yaml', '.yml'):
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(data, f, indent=2)
    logger.info(f"Configuration saved to {path}")


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path, 'r') as f:
            if path.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _merge_environment_variables(config: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay ENV_MAPPINGS environment variables onto ``config``."""
    merged = json.loads(json.dumps(config, default=str))

    for env_var, config_path in ENV_MAPPINGS.items():
        env_value = os.getenv(env_var)
        if env_value is None or env_value == '':
            continue
        value = env_value if config_path in _STRING_PATHS else _parse_env_value(env_value)
        _set_nested_value(merged, config_path, value)
        logger.debug(f"Applied environment variable: {env_var} -> {config_path}")

    return merged


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ('true', 'false'):
        return value.lower() == 'true'

    try:
        if '.' in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    return value


def _set_nested_value(config: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split('.')
    current = config
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
