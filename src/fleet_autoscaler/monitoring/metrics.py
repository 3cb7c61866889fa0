"""Metrics collection for scaling decisions."""

import asyncio
import time
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

import numpy as np
import psutil

from ..core.types import AlertSeverity, Anomaly, HostMetrics, MetricSample, MetricsSnapshot


logger = logging.getLogger(__name__)

# Built-in series names.
CPU = "cpu"
MEMORY = "memory"
REQUESTS = "requests"
RESPONSE_TIME = "response_time"
ERROR_RATE = "error_rate"
NETWORK_RX = "network_rx"
NETWORK_TX = "network_tx"
DISK_READ = "disk_read"
DISK_WRITE = "disk_write"

BUILTIN_SERIES = (
    CPU, MEMORY, REQUESTS, RESPONSE_TIME, ERROR_RATE,
    NETWORK_RX, NETWORK_TX, DISK_READ, DISK_WRITE,
)

# (critical, high) thresholds for anomaly detection
ANOMALY_THRESHOLDS = {
    CPU: (0.95, 0.85),
    MEMORY: (0.95, 0.90),
}

SNAPSHOT_AVERAGE_SAMPLES = 5
ERROR_RATE_WINDOW = 100
REQUEST_RATE_WINDOW = 60
RESPONSE_TIME_WINDOW = 50


class PsutilSampler:
    """Reads host metrics via psutil.

    Network and disk values are byte rates since the previous sample.
    """

    def __init__(self):
        self._last_io: Optional[Dict[str, float]] = None
        self._last_time: Optional[float] = None
        # Prime cpu_percent so the first real call has a baseline.
        psutil.cpu_percent(interval=None)

    def __call__(self) -> HostMetrics:
        cpu = psutil.cpu_percent(interval=None) / 100.0
        memory = psutil.virtual_memory()

        counters = {'rx': 0.0, 'tx': 0.0, 'read': 0.0, 'write': 0.0}
        net = psutil.net_io_counters()
        if net is not None:
            counters['rx'], counters['tx'] = float(net.bytes_recv), float(net.bytes_sent)
        disk = psutil.disk_io_counters()
        if disk is not None:
            counters['read'], counters['write'] = float(disk.read_bytes), float(disk.write_bytes)

        now = time.monotonic()
        rates = dict.fromkeys(counters, 0.0)
        if self._last_io is not None and now > self._last_time:
            elapsed = now - self._last_time
            rates = {k: max(0.0, (counters[k] - self._last_io[k]) / elapsed) for k in counters}
        self._last_io, self._last_time = counters, now

        try:
            load_average = tuple(psutil.getloadavg())
        except (AttributeError, OSError):
            load_average = (0.0, 0.0, 0.0)

        return HostMetrics(
            cpu_usage=max(0.0, min(1.0, cpu)),
            memory_usage=max(0.0, min(1.0, memory.percent / 100.0)),
            total_memory=memory.total,
            used_memory=memory.total - memory.available,
            network_rx=rates['rx'],
            network_tx=rates['tx'],
            disk_read=rates['read'],
            disk_write=rates['write'],
            load_average=load_average
        )


class MetricsCollector:
    """Time-series store of host and request metrics."""

    def __init__(
        self,
        collection_interval: float = 30.0,
        retention_period: float = 3600.0,
        max_samples_per_series: int = 10000,
        sampler: Optional[Callable[[], HostMetrics]] = None,
        on_metrics_collected: Optional[Callable[[HostMetrics], None]] = None,
        on_anomaly: Optional[Callable[[List[Anomaly]], None]] = None
    ):
        """Initialize metrics collector.

        Args:
            collection_interval: Seconds between host samples
            retention_period: Seconds a sample is kept
            max_samples_per_series: Hard cap per series between prunes
            sampler: Callable returning HostMetrics (psutil by default)
            on_metrics_collected: Called with every host sample
            on_anomaly: Called with the anomalies found in a cycle
        """
        self.collection_interval = collection_interval
        self.retention_period = retention_period
        self.max_samples_per_series = max_samples_per_series
        self._sampler = sampler
        self.on_metrics_collected = on_metrics_collected
        self.on_anomaly = on_anomaly

        self._series: Dict[str, Deque[MetricSample]] = {
            name: deque(maxlen=max_samples_per_series) for name in BUILTIN_SERIES
        }
        self._custom: Dict[str, Deque[MetricSample]] = {}
        self._total_requests = 0

        self._collection_task: Optional[asyncio.Task] = None
        self._collecting = False

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    async def start_collection(self) -> None:
        """Start periodic sampling; a no-op if already running."""
        if self._collecting:
            logger.warning("Metrics collection already running")
            return

        self._collecting = True
        logger.info("Starting metrics collection")
        await self.collect_once()
        self._collection_task = asyncio.create_task(self._collection_worker())

    async def stop_collection(self) -> None:
        """Stop periodic sampling."""
        self._collecting = False
        task, self._collection_task = self._collection_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped metrics collection")

    async def _collection_worker(self) -> None:
        while self._collecting:
            await asyncio.sleep(self.collection_interval)
            if not self._collecting:
                break
            await self.collect_once()

    async def collect_once(self) -> Optional[HostMetrics]:
        """Run one collection cycle. Failures are logged, not raised."""
        try:
            if self._sampler is None:
                self._sampler = PsutilSampler()
            host = self._sampler()
        except Exception as e:
            logger.error(f"Failed to sample host metrics: {e}")
            return None

        self._store_host_metrics(host)
        self.prune()
        anomalies = self.detect_anomalies(host)

        if anomalies and self.on_anomaly:
            try:
                self.on_anomaly(anomalies)
            except Exception as e:
                logger.error(f"Anomaly callback failed: {e}")

        if self.on_metrics_collected:
            try:
                self.on_metrics_collected(host)
            except Exception as e:
                logger.error(f"Metrics callback failed: {e}")

        logger.debug(f"Collected host metrics: cpu={host.cpu_usage:.2f} memory={host.memory_usage:.2f}")
        return host

    def _store_host_metrics(self, host: HostMetrics) -> None:
        ts = host.timestamp
        for name, value in (
            (CPU, host.cpu_usage),
            (MEMORY, host.memory_usage),
            (NETWORK_RX, host.network_rx),
            (NETWORK_TX, host.network_tx),
            (DISK_READ, host.disk_read),
            (DISK_WRITE, host.disk_write),
        ):
            self._series[name].append(MetricSample(name, float(value), ts))

    def record_request(
        self,
        response_time: float,
        status_code: int,
        method: str = "GET",
        url: str = "/"
    ) -> None:
        """Record an externally observed request.

        Args:
            response_time: Response time in milliseconds
            status_code: HTTP status; >= 400 counts as an error
            method: HTTP method
            url: Request path
        """
        now = datetime.now()
        is_error = status_code >= 400
        self._series[REQUESTS].append(MetricSample(
            REQUESTS, float(response_time), now,
            {'status_code': status_code, 'method': method, 'url': url, 'is_error': is_error}
        ))
        self._series[RESPONSE_TIME].append(MetricSample(
            RESPONSE_TIME, float(response_time), now, {'method': method, 'url': url}
        ))
        self._total_requests += 1

        recent = list(self._series[REQUESTS])[-ERROR_RATE_WINDOW:]
        errors = sum(1 for r in recent if r.metadata.get('is_error'))
        self._series[ERROR_RATE].append(MetricSample(ERROR_RATE, errors / len(recent), now))

    def record_custom_metric(self, name: str, value: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Append an arbitrary named observation."""
        if name in self._series:
            series = self._series[name]
        else:
            series = self._custom.setdefault(name, deque(maxlen=self.max_samples_per_series))
        series.append(MetricSample(name, float(value), datetime.now(), dict(metadata or {})))

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop samples older than the retention window; returns how many."""
        cutoff = (now or datetime.now()) - timedelta(seconds=self.retention_period)
        removed = 0
        for series in list(self._series.values()) + list(self._custom.values()):
            while series and series[0].timestamp <= cutoff:
                series.popleft()
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} expired metric samples")
        return removed

    def detect_anomalies(self, host: HostMetrics) -> List[Anomaly]:
        anomalies = []
        for metric, value in ((CPU, host.cpu_usage), (MEMORY, host.memory_usage)):
            critical, high = ANOMALY_THRESHOLDS[metric]
            if value > critical:
                anomalies.append(Anomaly(
                    metric=metric,
                    severity=AlertSeverity.CRITICAL,
                    message=f"{metric} usage critically high: {round(value * 100)}%",
                    value=value
                ))
            elif value > high:
                anomalies.append(Anomaly(
                    metric=metric,
                    severity=AlertSeverity.HIGH,
                    message=f"{metric} usage high: {round(value * 100)}%",
                    value=value
                ))
        return anomalies

    def get_current_metrics(self) -> MetricsSnapshot:
        """Short-window view of the stored samples. Does not mutate state."""
        def average_of_last(name: str, count: int) -> float:
            recent = list(self._series[name])[-count:]
            if not recent:
                return 0.0
            return sum(s.value for s in recent) / len(recent)

        error_rates = self._series[ERROR_RATE]
        return MetricsSnapshot(
            cpu_usage=average_of_last(CPU, SNAPSHOT_AVERAGE_SAMPLES),
            memory_usage=average_of_last(MEMORY, SNAPSHOT_AVERAGE_SAMPLES),
            request_rate=self._calculate_request_rate(),
            avg_response_time=average_of_last(RESPONSE_TIME, RESPONSE_TIME_WINDOW),
            error_rate=error_rates[-1].value if error_rates else 0.0,
            timestamp=datetime.now()
        )

    def _calculate_request_rate(self) -> float:
        """Requests per minute over the most recent request samples."""
        recent = list(self._series[REQUESTS])[-REQUEST_RATE_WINDOW:]
        if len(recent) < 2:
            return 0.0
        span = (recent[-1].timestamp - recent[0].timestamp).total_seconds()
        if span <= 0:
            return 0.0
        return len(recent) / span * 60.0

    def get_metric_history(self, name: str, window: float = 3600.0) -> Iterator[MetricSample]:
        """Oldest-first samples of ``name`` newer than ``now - window`` seconds."""
        series = self._series.get(name)
        if series is None:
            series = self._custom.get(name, ())
        cutoff = datetime.now() - timedelta(seconds=window)
        return iter([s for s in list(series) if s.timestamp > cutoff])

    @staticmethod
    def _summarize(samples: List[MetricSample]) -> Dict[str, float]:
        if not samples:
            return {'count': 0, 'avg': 0.0, 'min': 0.0, 'max': 0.0, 'p95': 0.0}
        values = np.fromiter((s.value for s in samples), dtype=float, count=len(samples))
        return {
            'count': int(values.size),
            'avg': float(values.mean()),
            'min': float(values.min()),
            'max': float(values.max()),
            'p95': float(np.percentile(values, 95)),
        }

    def get_metrics_stats(self) -> Dict[str, Any]:
        """Summary statistics of every stored series."""
        requests = list(self._series[REQUESTS])
        return {
            'cpu': self._summarize(list(self._series[CPU])),
            'memory': self._summarize(list(self._series[MEMORY])),
            'requests': {
                'total': self._total_requests,
                'retained': len(requests),
                'recent': len(requests[-ERROR_RATE_WINDOW:]),
                'rate_per_minute': self._calculate_request_rate(),
            },
            'response_time': self._summarize(list(self._series[RESPONSE_TIME])),
            'error_rate': self._summarize(list(self._series[ERROR_RATE])),
            'custom': {name: self._summarize(list(s)) for name, s in self._custom.items()},
        }

    def get_config(self) -> Dict[str, Any]:
        return {
            'collection_interval': self.collection_interval,
            'retention_period': self.retention_period,
            'is_collecting': self._collecting,
        }
