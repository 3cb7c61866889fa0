"""Scaling policies: pure scale-up / scale-down decisions with cooldown."""

import math
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.exceptions import InvalidPolicyError
from ..core.types import MetricKind, MetricsSnapshot, ScalingDecision, ScalingPolicyConfig

logger = logging.getLogger(__name__)

# Response time at which the response_time kind reports full load.
MAX_RESPONSE_TIME_MS = 5000.0

# Weights of the composite "custom" metric.
CUSTOM_CPU_WEIGHT = 0.4
CUSTOM_MEMORY_WEIGHT = 0.3
CUSTOM_REQUEST_WEIGHT = 0.3


def _request_load(snapshot: MetricsSnapshot, config: ScalingPolicyConfig) -> float:
    if not snapshot.request_rate or config.max_request_rate <= 0:
        return 0.0
    return min(snapshot.request_rate / config.max_request_rate, 1.0)


def _cpu_load(snapshot: MetricsSnapshot, config: ScalingPolicyConfig) -> float:
    return snapshot.cpu_usage or 0.0


def _memory_load(snapshot: MetricsSnapshot, config: ScalingPolicyConfig) -> float:
    return snapshot.memory_usage or 0.0


def _response_time_load(snapshot: MetricsSnapshot, config: ScalingPolicyConfig) -> float:
    if not snapshot.avg_response_time:
        return 0.0
    return min(snapshot.avg_response_time / MAX_RESPONSE_TIME_MS, 1.0)


def _custom_load(snapshot: MetricsSnapshot, config: ScalingPolicyConfig) -> float:
    return (
        _cpu_load(snapshot, config) * CUSTOM_CPU_WEIGHT
        + _memory_load(snapshot, config) * CUSTOM_MEMORY_WEIGHT
        + _request_load(snapshot, config) * CUSTOM_REQUEST_WEIGHT
    )


Normalizer = Callable[[MetricsSnapshot, ScalingPolicyConfig], float]

NORMALIZERS: Dict[MetricKind, Normalizer] = {
    MetricKind.CPU: _cpu_load,
    MetricKind.MEMORY: _memory_load,
    MetricKind.REQUESTS: _request_load,
    MetricKind.RESPONSE_TIME: _response_time_load,
    MetricKind.CUSTOM: _custom_load,
}

_missing = set(MetricKind) - set(NORMALIZERS)
if _missing:
    raise RuntimeError(f"Metric kinds without a normalizer: {sorted(k.value for k in _missing)}")


def validate_policy_config(config: ScalingPolicyConfig) -> None:
    """Raise InvalidPolicyError if ``config`` is internally inconsistent."""
    if not isinstance(config.metric_kind, MetricKind):
        raise InvalidPolicyError(config.name, f"unknown metric kind {config.metric_kind!r}")
    for label, value in (
        ('scale_up_threshold', config.scale_up_threshold),
        ('scale_down_threshold', config.scale_down_threshold),
    ):
        if not 0.0 <= value <= 1.0:
            raise InvalidPolicyError(config.name, f"{label} must be within 0..1, got {value}")
    if config.scale_down_threshold >= config.scale_up_threshold:
        raise InvalidPolicyError(
            config.name,
            f"scale_down_threshold {config.scale_down_threshold} must be below "
            f"scale_up_threshold {config.scale_up_threshold}"
        )
    if config.min_instances < 1:
        raise InvalidPolicyError(config.name, "min_instances must be at least 1")
    if config.max_instances < config.min_instances:
        raise InvalidPolicyError(config.name, "max_instances must be >= min_instances")
    if config.scale_factor <= 1.0:
        raise InvalidPolicyError(config.name, "scale_factor must be greater than 1")
    if config.cooldown_period < 0:
        raise InvalidPolicyError(config.name, "cooldown_period must not be negative")
    if config.max_request_rate <= 0:
        raise InvalidPolicyError(config.name, "max_request_rate must be positive")


class ScalingPolicy:
    """Threshold policy for one metric kind.

    A policy is a pure decision function apart from ``last_scale_time``,
    which only the manager advances through ``update_last_scale_time`` once a
    scale action has been committed.
    """

    def __init__(self, config: Optional[ScalingPolicyConfig] = None, **overrides: Any):
        """Initialize scaling policy.

        Args:
            config: Full policy configuration
            **overrides: Individual ScalingPolicyConfig fields applied on top
        """
        config = config or ScalingPolicyConfig()
        for key, value in overrides.items():
            if not hasattr(config, key):
                raise InvalidPolicyError(config.name, f"unknown setting '{key}'")
            setattr(config, key, value)
        if isinstance(config.metric_kind, str) and not isinstance(config.metric_kind, MetricKind):
            try:
                config.metric_kind = MetricKind(config.metric_kind)
            except ValueError:
                raise InvalidPolicyError(config.name, f"unknown metric kind {config.metric_kind!r}")
        validate_policy_config(config)
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def metric_kind(self) -> MetricKind:
        return self.config.metric_kind

    @property
    def last_scale_time(self) -> Optional[datetime]:
        return self.config.last_scale_time

    def in_cooldown(self, now: Optional[datetime] = None) -> bool:
        if self.config.last_scale_time is None:
            return False
        now = now or datetime.now()
        return now - self.config.last_scale_time < timedelta(seconds=self.config.cooldown_period)

    def normalized_value(self, snapshot: MetricsSnapshot) -> float:
        """Load in 0..1 for this policy's metric kind."""
        return NORMALIZERS[self.config.metric_kind](snapshot, self.config)

    def should_scale_up(self, snapshot: MetricsSnapshot, current_instances: int) -> ScalingDecision:
        cfg = self.config
        if not cfg.enabled or current_instances >= cfg.max_instances:
            return ScalingDecision(False, "Policy disabled or at max capacity", policy_name=cfg.name)
        if self.in_cooldown():
            return ScalingDecision(False, "Cooldown period active", policy_name=cfg.name)

        value = self.normalized_value(snapshot)
        if value > cfg.scale_up_threshold:
            target = min(math.ceil(current_instances * cfg.scale_factor), cfg.max_instances)
            return ScalingDecision(
                should_scale=True,
                target_instances=target,
                reason=(
                    f"{cfg.metric_kind.value} usage {round(value * 100)}% exceeds "
                    f"threshold {round(cfg.scale_up_threshold * 100)}%"
                ),
                policy_name=cfg.name
            )
        return ScalingDecision(False, "Threshold not exceeded", policy_name=cfg.name)

    def should_scale_down(self, snapshot: MetricsSnapshot, current_instances: int) -> ScalingDecision:
        cfg = self.config
        if not cfg.enabled or current_instances <= cfg.min_instances:
            return ScalingDecision(False, "Policy disabled or at min capacity", policy_name=cfg.name)
        if self.in_cooldown():
            return ScalingDecision(False, "Cooldown period active", policy_name=cfg.name)

        value = self.normalized_value(snapshot)
        if value < cfg.scale_down_threshold:
            target = max(math.floor(current_instances / cfg.scale_factor), cfg.min_instances)
            return ScalingDecision(
                should_scale=True,
                target_instances=target,
                reason=(
                    f"{cfg.metric_kind.value} usage {round(value * 100)}% below "
                    f"threshold {round(cfg.scale_down_threshold * 100)}%"
                ),
                policy_name=cfg.name
            )
        return ScalingDecision(False, "Threshold not met", policy_name=cfg.name)

    def update_last_scale_time(self, when: Optional[datetime] = None) -> None:
        self.config.last_scale_time = when or datetime.now()

    def get_config(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            'name': cfg.name,
            'type': cfg.metric_kind.value,
            'scale_up_threshold': cfg.scale_up_threshold,
            'scale_down_threshold': cfg.scale_down_threshold,
            'cooldown_period': cfg.cooldown_period,
            'min_instances': cfg.min_instances,
            'max_instances': cfg.max_instances,
            'scale_factor': cfg.scale_factor,
            'enabled': cfg.enabled,
            'max_request_rate': cfg.max_request_rate,
            'last_scale_time': cfg.last_scale_time.isoformat() if cfg.last_scale_time else None,
        }

    def update_config(self, **changes: Any) -> None:
        """Apply changes atomically; the old config stays on validation failure."""
        candidate = ScalingPolicyConfig(**{**self.config.__dict__, **changes})
        if isinstance(candidate.metric_kind, str) and not isinstance(candidate.metric_kind, MetricKind):
            candidate.metric_kind = MetricKind(candidate.metric_kind)
        validate_policy_config(candidate)
        self.config = candidate
        logger.info(f"Scaling policy '{self.name}' updated: {changes}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, kind={self.metric_kind.value!r})"


class CompositeScalingPolicy(ScalingPolicy):
    """Combine several policies.

    Scale up as soon as any sub-policy asks for it; scale down only when all
    of them agree, to the largest target any of them proposes.
    """

    def __init__(self, policies: Sequence[ScalingPolicy], name: str = "composite_policy", **overrides: Any):
        super().__init__(ScalingPolicyConfig(name=name, metric_kind=MetricKind.CUSTOM), **overrides)
        self.policies: List[ScalingPolicy] = list(policies)

    def should_scale_up(self, snapshot: MetricsSnapshot, current_instances: int) -> ScalingDecision:
        if not self.config.enabled:
            return ScalingDecision(False, "Policy disabled", policy_name=self.name)
        for policy in self.policies:
            decision = policy.should_scale_up(snapshot, current_instances)
            if decision.should_scale:
                return ScalingDecision(
                    should_scale=True,
                    target_instances=decision.target_instances,
                    reason=f"Composite policy triggered by {policy.name}: {decision.reason}",
                    policy_name=self.name
                )
        return ScalingDecision(False, "No composite policy triggered scale up", policy_name=self.name)

    def should_scale_down(self, snapshot: MetricsSnapshot, current_instances: int) -> ScalingDecision:
        if not self.config.enabled:
            return ScalingDecision(False, "Policy disabled", policy_name=self.name)
        decisions = [p.should_scale_down(snapshot, current_instances) for p in self.policies]
        if decisions and all(d.should_scale for d in decisions):
            return ScalingDecision(
                should_scale=True,
                target_instances=max(d.target_instances for d in decisions),
                reason="All composite policies agree to scale down",
                policy_name=self.name
            )
        return ScalingDecision(
            False, "Composite policies do not all agree to scale down", policy_name=self.name
        )

    def update_last_scale_time(self, when: Optional[datetime] = None) -> None:
        when = when or datetime.now()
        super().update_last_scale_time(when)
        for policy in self.policies:
            policy.update_last_scale_time(when)

    def get_config(self) -> Dict[str, Any]:
        config = super().get_config()
        config['policies'] = [p.get_config() for p in self.policies]
        return config


def cpu_policy(**overrides: Any) -> ScalingPolicy:
    """CPU policy with 75% / 25% thresholds."""
    settings = dict(name="cpu_policy", metric_kind=MetricKind.CPU,
                    scale_up_threshold=0.75, scale_down_threshold=0.25)
    settings.update(overrides)
    return ScalingPolicy(**settings)


def memory_policy(**overrides: Any) -> ScalingPolicy:
    """Memory policy with 80% / 30% thresholds."""
    settings = dict(name="memory_policy", metric_kind=MetricKind.MEMORY,
                    scale_up_threshold=0.8, scale_down_threshold=0.3)
    settings.update(overrides)
    return ScalingPolicy(**settings)


def request_policy(**overrides: Any) -> ScalingPolicy:
    """Request-rate policy with 85% / 20% thresholds."""
    settings = dict(name="request_policy", metric_kind=MetricKind.REQUESTS,
                    scale_up_threshold=0.85, scale_down_threshold=0.2)
    settings.update(overrides)
    return ScalingPolicy(**settings)
