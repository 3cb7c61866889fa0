"""Metrics collection."""

from .metrics import MetricsCollector, PsutilSampler

__all__ = ["MetricsCollector", "PsutilSampler"]
