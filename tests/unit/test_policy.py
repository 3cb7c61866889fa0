"""Tests for scaling policies."""

import pytest
from datetime import datetime, timedelta

from fleet_autoscaler.core.exceptions import ConfigurationError, InvalidPolicyError
from fleet_autoscaler.core.types import MetricKind, MetricsSnapshot, ScalingPolicyConfig
from fleet_autoscaler.scaling.policy import (
    CompositeScalingPolicy, NORMALIZERS, ScalingPolicy, cpu_policy, memory_policy,
    request_policy
)


def snapshot(**values):
    return MetricsSnapshot(**values)


class TestScalingPolicyConfig:
    """Test policy construction and validation."""

    def test_default_values(self):
        policy = ScalingPolicy()

        assert policy.config.scale_up_threshold == 0.8
        assert policy.config.scale_down_threshold == 0.3
        assert policy.config.cooldown_period == 300.0
        assert policy.config.min_instances == 1
        assert policy.config.max_instances == 10
        assert policy.config.scale_factor == 1.5
        assert policy.metric_kind == MetricKind.CPU
        assert policy.last_scale_time is None

    def test_metric_kind_from_string(self):
        policy = ScalingPolicy(metric_kind="memory")
        assert policy.metric_kind is MetricKind.MEMORY

    def test_unknown_metric_kind_rejected(self):
        with pytest.raises(InvalidPolicyError):
            ScalingPolicy(metric_kind="disk")

    @pytest.mark.parametrize("overrides", [
        {'scale_up_threshold': 1.5},
        {'scale_down_threshold': -0.1},
        {'scale_up_threshold': 0.3, 'scale_down_threshold': 0.3},
        {'min_instances': 0},
        {'min_instances': 5, 'max_instances': 4},
        {'scale_factor': 1.0},
        {'cooldown_period': -1},
        {'max_request_rate': 0},
    ])
    def test_invalid_settings_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            ScalingPolicy(**overrides)

    def test_unknown_setting_rejected(self):
        with pytest.raises(InvalidPolicyError, match="unknown setting"):
            ScalingPolicy(threshold=0.5)

    def test_update_config_is_atomic(self):
        policy = ScalingPolicy(name="cpu")

        with pytest.raises(InvalidPolicyError):
            policy.update_config(scale_up_threshold=0.1)

        assert policy.config.scale_up_threshold == 0.8

        policy.update_config(scale_up_threshold=0.9, max_instances=20)
        assert policy.config.scale_up_threshold == 0.9
        assert policy.config.max_instances == 20
        assert policy.name == "cpu"

    def test_get_config(self):
        policy = ScalingPolicy(name="p", metric_kind=MetricKind.REQUESTS)
        policy.update_last_scale_time(datetime(2024, 1, 1, 12, 0))

        config = policy.get_config()

        assert config['name'] == "p"
        assert config['type'] == "requests"
        assert config['last_scale_time'] == "2024-01-01T12:00:00"


class TestNormalization:
    """Test metric normalization per kind."""

    def test_every_kind_has_normalizer(self):
        assert set(NORMALIZERS) == set(MetricKind)

    def test_cpu_and_memory(self):
        snap = snapshot(cpu_usage=0.42, memory_usage=0.66)
        assert ScalingPolicy(metric_kind="cpu").normalized_value(snap) == 0.42
        assert ScalingPolicy(metric_kind="memory").normalized_value(snap) == 0.66

    def test_requests_relative_to_max_rate(self):
        policy = ScalingPolicy(metric_kind="requests", max_request_rate=200)
        assert policy.normalized_value(snapshot(request_rate=50)) == pytest.approx(0.25)
        assert policy.normalized_value(snapshot(request_rate=1000)) == 1.0
        assert policy.normalized_value(snapshot(request_rate=0)) == 0.0

    def test_response_time_capped(self):
        policy = ScalingPolicy(metric_kind="response_time")
        assert policy.normalized_value(snapshot(avg_response_time=2500)) == pytest.approx(0.5)
        assert policy.normalized_value(snapshot(avg_response_time=20000)) == 1.0

    def test_custom_weighted_blend(self):
        policy = ScalingPolicy(metric_kind="custom", max_request_rate=1000)
        snap = snapshot(cpu_usage=1.0, memory_usage=0.5, request_rate=500)
        assert policy.normalized_value(snap) == pytest.approx(0.4 + 0.15 + 0.15)


class TestScalingDecisions:
    """Test scale up / scale down decisions."""

    @pytest.mark.parametrize("current,expected", [(1, 2), (2, 3), (3, 5), (4, 6), (7, 10), (9, 10)])
    def test_scale_up_target(self, busy_snapshot, current, expected):
        policy = ScalingPolicy(metric_kind="cpu", scale_up_threshold=0.8)

        decision = policy.should_scale_up(busy_snapshot, current)

        assert decision.should_scale
        assert decision.target_instances == expected
        assert decision.policy_name == policy.name
        assert "exceeds" in decision.reason

    @pytest.mark.parametrize("current,expected", [(2, 1), (3, 2), (6, 4), (10, 6)])
    def test_scale_down_target(self, idle_snapshot, current, expected):
        policy = ScalingPolicy(metric_kind="cpu", scale_down_threshold=0.3)

        decision = policy.should_scale_down(idle_snapshot, current)

        assert decision.should_scale
        assert decision.target_instances == expected

    def test_scale_down_respects_min(self, idle_snapshot):
        policy = ScalingPolicy(min_instances=3)
        assert policy.should_scale_down(idle_snapshot, 4).target_instances == 3

    def test_threshold_is_strict(self):
        policy = ScalingPolicy(scale_up_threshold=0.8, scale_down_threshold=0.3)

        assert not policy.should_scale_up(snapshot(cpu_usage=0.8), 2).should_scale
        assert not policy.should_scale_down(snapshot(cpu_usage=0.3), 2).should_scale

    def test_refuses_at_bounds(self, busy_snapshot, idle_snapshot):
        policy = ScalingPolicy(min_instances=2, max_instances=4)

        up = policy.should_scale_up(busy_snapshot, 4)
        down = policy.should_scale_down(idle_snapshot, 2)

        assert not up.should_scale
        assert up.reason == "Policy disabled or at max capacity"
        assert not down.should_scale
        assert down.reason == "Policy disabled or at min capacity"

    def test_disabled_policy_never_scales(self, busy_snapshot, idle_snapshot):
        policy = ScalingPolicy(enabled=False)

        assert not policy.should_scale_up(busy_snapshot, 2).should_scale
        assert not policy.should_scale_down(idle_snapshot, 5).should_scale

    def test_cooldown_blocks_second_decision(self, busy_snapshot):
        policy = ScalingPolicy(cooldown_period=300)

        assert policy.should_scale_up(busy_snapshot, 1).should_scale
        policy.update_last_scale_time()

        decision = policy.should_scale_up(busy_snapshot, 2)
        assert not decision.should_scale
        assert decision.reason == "Cooldown period active"

    def test_cooldown_elapses(self, busy_snapshot):
        policy = ScalingPolicy(cooldown_period=60)
        policy.update_last_scale_time(datetime.now() - timedelta(seconds=61))

        assert not policy.in_cooldown()
        assert policy.should_scale_up(busy_snapshot, 2).should_scale

    def test_decisions_do_not_touch_cooldown(self, busy_snapshot):
        policy = ScalingPolicy()
        policy.should_scale_up(busy_snapshot, 1)
        assert policy.last_scale_time is None


class TestCompositeScalingPolicy:
    """Test composite policies."""

    def test_any_sub_policy_triggers_scale_up(self):
        p1 = ScalingPolicy(name="cpu", metric_kind="cpu", scale_up_threshold=0.7)
        p2 = ScalingPolicy(name="memory", metric_kind="memory", scale_up_threshold=0.7)
        composite = CompositeScalingPolicy([p1, p2])

        decision = composite.should_scale_up(snapshot(cpu_usage=0.9, memory_usage=0.5), 2)

        assert decision.should_scale
        assert decision.target_instances == 3
        assert decision.reason.startswith("Composite policy triggered by cpu")
        assert decision.policy_name == "composite_policy"

    def test_scale_down_requires_agreement(self):
        p1 = ScalingPolicy(name="cpu", metric_kind="cpu")
        p2 = ScalingPolicy(name="memory", metric_kind="memory")
        composite = CompositeScalingPolicy([p1, p2])

        both_idle = composite.should_scale_down(snapshot(cpu_usage=0.1, memory_usage=0.1), 4)
        one_idle = composite.should_scale_down(snapshot(cpu_usage=0.1, memory_usage=0.5), 4)

        assert both_idle.should_scale
        assert not one_idle.should_scale

    def test_scale_down_takes_largest_target(self):
        p1 = ScalingPolicy(name="gentle", scale_factor=1.25)
        p2 = ScalingPolicy(name="aggressive", scale_factor=2.0)
        composite = CompositeScalingPolicy([p1, p2])

        decision = composite.should_scale_down(snapshot(cpu_usage=0.05), 8)

        assert decision.target_instances == 6

    def test_empty_composite_never_scales_down(self, idle_snapshot):
        assert not CompositeScalingPolicy([]).should_scale_down(idle_snapshot, 5).should_scale

    def test_last_scale_time_propagates(self):
        p1, p2 = ScalingPolicy(name="a"), ScalingPolicy(name="b")
        composite = CompositeScalingPolicy([p1, p2])
        when = datetime(2024, 5, 1, 8, 30)

        composite.update_last_scale_time(when)

        assert composite.last_scale_time == when
        assert p1.last_scale_time == when
        assert p2.last_scale_time == when

    def test_config_lists_sub_policies(self):
        composite = CompositeScalingPolicy([cpu_policy(), memory_policy()], name="combo")
        config = composite.get_config()

        assert config['name'] == "combo"
        assert [p['name'] for p in config['policies']] == ["cpu_policy", "memory_policy"]


class TestPresets:
    """Test preset policy factories."""

    def test_preset_thresholds(self):
        assert (cpu_policy().config.scale_up_threshold, cpu_policy().config.scale_down_threshold) == (0.75, 0.25)
        assert (memory_policy().config.scale_up_threshold, memory_policy().config.scale_down_threshold) == (0.8, 0.3)
        assert (request_policy().config.scale_up_threshold, request_policy().config.scale_down_threshold) == (0.85, 0.2)
        assert request_policy().metric_kind is MetricKind.REQUESTS

    def test_preset_overrides(self):
        policy = cpu_policy(max_instances=5, cooldown_period=30)
        assert policy.config.max_instances == 5
        assert policy.config.cooldown_period == 30

    def test_explicit_config_object(self):
        config = ScalingPolicyConfig(name="explicit", metric_kind=MetricKind.RESPONSE_TIME)
        assert ScalingPolicy(config).metric_kind is MetricKind.RESPONSE_TIME
