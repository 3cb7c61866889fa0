"""Load balancer distributing requests across healthy instances."""

import asyncio
import random
import logging
import threading
import zlib
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.exceptions import NoHealthyInstanceError
from ..core.types import (
    InstanceRecord, LoadBalancingAlgorithm, ProxyRequest, ProxyResponse,
    SERVICE_UNAVAILABLE_BODY
)


logger = logging.getLogger(__name__)

HEALTHY_STATUSES = ('healthy', 'ok')
USER_AGENT = 'fleet-autoscaler-load-balancer'

# Hop-by-hop headers are not forwarded to the backend.
_HOP_HEADERS = frozenset((
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade', 'host', 'content-length',
))


class LoadBalancer:
    """Routes requests to healthy backend instances.

    The instance table is touched from the scaling loop (add/remove), the
    health-check loop (healthy flag) and request handling (connection counts).
    Every read-then-mutate sequence runs under ``_lock``; no await happens
    while it is held.
    """

    def __init__(
        self,
        algorithm: LoadBalancingAlgorithm = LoadBalancingAlgorithm.ROUND_ROBIN,
        health_check_interval: float = 30.0,
        health_check_timeout: float = 5.0,
        max_retries: int = 3,
        request_timeout: float = 30.0,
        retry_backoff: float = 0.1,
        rng: Optional[random.Random] = None
    ):
        """Initialize load balancer.

        Args:
            algorithm: Instance selection algorithm
            health_check_interval: Seconds between health-check cycles
            health_check_timeout: Per-probe timeout in seconds
            max_retries: Retries after the first failed proxy attempt
            request_timeout: Per-attempt proxy timeout in seconds
            retry_backoff: Base of the linear backoff between proxy attempts
            rng: Random source for weighted selection
        """
        self.algorithm = LoadBalancingAlgorithm(algorithm)
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self.retry_backoff = retry_backoff
        self._rng = rng or random.Random()

        self._instances: Dict[str, InstanceRecord] = {}
        self._lock = threading.RLock()
        self._rr_index = 0
        self._sticky: Dict[str, str] = {}

        self._session: Optional[aiohttp.ClientSession] = None
        self._health_task: Optional[asyncio.Task] = None
        self._health_checking = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_health_checking(self) -> bool:
        return self._health_checking

    @property
    def instances(self) -> List[InstanceRecord]:
        with self._lock:
            return list(self._instances.values())

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._instances

    def add_instance(
        self,
        instance_id: str,
        base_url: str,
        weight: int = 1,
        metadata: Optional[Dict[str, Any]] = None
    ) -> InstanceRecord:
        """Register an instance. New instances start healthy."""
        record = InstanceRecord(
            instance_id=instance_id,
            base_url=base_url.rstrip('/'),
            weight=max(1, int(weight)),
            metadata=dict(metadata or {})
        )
        with self._lock:
            self._instances[instance_id] = record
        logger.info(f"Instance added to load balancer: {instance_id} ({record.base_url})")
        return record

    def remove_instance(self, instance_id: str) -> bool:
        """Unregister an instance and drop any sticky mapping onto it."""
        with self._lock:
            removed = self._instances.pop(instance_id, None)
            if removed is None:
                return False
            self._sticky = {ip: iid for ip, iid in self._sticky.items() if iid != instance_id}
        logger.info(f"Instance removed from load balancer: {instance_id}")
        return True

    def get_instance(self, instance_id: str) -> Optional[InstanceRecord]:
        with self._lock:
            return self._instances.get(instance_id)

    def healthy_instances(self) -> List[InstanceRecord]:
        with self._lock:
            return [r for r in self._instances.values() if r.healthy]

    def get_next_instance(self, client_ip: Optional[str] = None) -> InstanceRecord:
        """Select an instance and count a new connection on it.

        Raises:
            NoHealthyInstanceError: If no registered instance is healthy
        """
        with self._lock:
            healthy = [r for r in self._instances.values() if r.healthy]
            if not healthy:
                raise NoHealthyInstanceError(len(self._instances))

            if self.algorithm == LoadBalancingAlgorithm.LEAST_CONNECTIONS:
                chosen = self._least_connections(healthy)
            elif self.algorithm == LoadBalancingAlgorithm.WEIGHTED_ROUND_ROBIN:
                chosen = self._weighted(healthy)
            elif self.algorithm == LoadBalancingAlgorithm.IP_HASH:
                chosen = self._ip_hash(healthy, client_ip)
            else:
                chosen = self._round_robin(healthy)

            chosen.active_connections += 1
            return chosen

    def _round_robin(self, healthy: List[InstanceRecord]) -> InstanceRecord:
        if self._rr_index >= len(healthy):
            self._rr_index = 0
        chosen = healthy[self._rr_index]
        self._rr_index += 1
        return chosen

    @staticmethod
    def _least_connections(healthy: List[InstanceRecord]) -> InstanceRecord:
        return min(healthy, key=lambda r: r.active_connections)

    def _weighted(self, healthy: List[InstanceRecord]) -> InstanceRecord:
        total = sum(r.weight for r in healthy)
        point = self._rng.random() * total
        for record in healthy:
            point -= record.weight
            if point < 0:
                return record
        return healthy[-1]

    def _ip_hash(self, healthy: List[InstanceRecord], client_ip: Optional[str]) -> InstanceRecord:
        if not client_ip:
            return self._round_robin(healthy)

        cached = self._sticky.get(client_ip)
        if cached is not None:
            record = self._instances.get(cached)
            if record is not None and record.healthy:
                return record
            del self._sticky[client_ip]

        chosen = healthy[zlib.crc32(client_ip.encode('utf-8')) % len(healthy)]
        self._sticky[client_ip] = chosen.instance_id
        return chosen

    def release_connection(self, instance_id: str) -> None:
        with self._lock:
            record = self._instances.get(instance_id)
            if record is not None and record.active_connections > 0:
                record.active_connections -= 1

    def mark_health(self, instance_id: str, healthy: bool) -> None:
        """Set the healthy flag of an instance, logging transitions."""
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                return
            was_healthy = record.healthy
            record.healthy = healthy
            record.last_health_check = datetime.now()

        if was_healthy and not healthy:
            logger.warning(f"Instance {instance_id} marked unhealthy")
        elif healthy and not was_healthy:
            logger.info(f"Instance {instance_id} recovered")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={'User-Agent': USER_AGENT}
            )
        return self._session

    async def start_health_checks(self) -> None:
        """Run one health-check cycle now, then every interval."""
        if self._health_checking:
            logger.warning("Health checks already running")
            return

        self._health_checking = True
        logger.info(f"Starting health checks every {self.health_check_interval}s")
        await self.check_health()
        self._health_task = asyncio.create_task(self._health_check_loop())

    async def stop_health_checks(self) -> None:
        self._health_checking = False
        task, self._health_task = self._health_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped health checks")

    async def _health_check_loop(self) -> None:
        while self._health_checking:
            await asyncio.sleep(self.health_check_interval)
            if not self._health_checking:
                break
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Health check cycle failed: {e}")

    async def check_health(self) -> Dict[str, bool]:
        """Probe every registered instance concurrently.

        Returns:
            Mapping of instance id to probe result
        """
        targets = self.instances
        if not targets:
            return {}

        outcomes = await asyncio.gather(
            *(self._probe(record) for record in targets),
            return_exceptions=True
        )

        results = {}
        for record, outcome in zip(targets, outcomes):
            healthy = outcome is True
            if isinstance(outcome, BaseException):
                logger.debug(f"Health probe for {record.instance_id} raised {outcome!r}")
            # Instances removed while probing are skipped by mark_health.
            self.mark_health(record.instance_id, healthy)
            results[record.instance_id] = healthy
        return results

    async def _probe(self, record: InstanceRecord) -> bool:
        """GET ``/health``; healthy iff 2xx with a healthy/ok JSON status."""
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.health_check_timeout)
        try:
            async with session.get(f"{record.base_url}/health", timeout=timeout) as response:
                if not 200 <= response.status < 300:
                    logger.debug(f"Health probe for {record.instance_id} returned {response.status}")
                    return False
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    return False
                return isinstance(payload, dict) and payload.get('status') in HEALTHY_STATUSES
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Health probe for {record.instance_id} failed: {e!r}")
            return False

    async def proxy_request(self, request: ProxyRequest) -> ProxyResponse:
        """Forward ``request`` to a selected instance with retries.

        Transport failures mark the instance unhealthy and retry after a
        linear backoff. Once retries are exhausted a 503 response is
        returned rather than raised.
        """
        attempts = 0
        last_error: Optional[BaseException] = None

        while attempts <= self.max_retries:
            attempts += 1
            try:
                record = self.get_next_instance(request.client_ip)
            except NoHealthyInstanceError as e:
                last_error = e
            else:
                try:
                    return await self._forward(record, request, attempts)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.warning(f"Proxy to {record.instance_id} failed (attempt {attempts}): {e!r}")
                    self.mark_health(record.instance_id, False)
                finally:
                    self.release_connection(record.instance_id)

            if attempts <= self.max_retries:
                await asyncio.sleep(self.retry_backoff * attempts)

        logger.error(f"Proxy request {request.method} {request.path} failed after {attempts} attempts: {last_error}")
        return ProxyResponse(
            status=503,
            body=dict(SERVICE_UNAVAILABLE_BODY),
            attempts=attempts
        )

    async def _forward(self, record: InstanceRecord, request: ProxyRequest, attempts: int) -> ProxyResponse:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS}
        if request.client_ip:
            forwarded = headers.get('X-Forwarded-For')
            headers['X-Forwarded-For'] = f"{forwarded}, {request.client_ip}" if forwarded else request.client_ip
        headers['X-Forwarded-Proto'] = request.protocol
        if request.host:
            headers['X-Forwarded-Host'] = request.host

        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with session.request(
            request.method,
            f"{record.base_url}{request.path}",
            headers=headers,
            data=request.body,
            timeout=timeout
        ) as response:
            body = await response.read()
            return ProxyResponse(
                status=response.status,
                body=body,
                instance_id=record.instance_id,
                attempts=attempts,
                headers={k: v for k, v in response.headers.items() if k.lower() not in _HOP_HEADERS}
            )

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._instances.values())
            return {
                'total_instances': len(records),
                'healthy_instances': sum(1 for r in records if r.healthy),
                'algorithm': self.algorithm.value,
                'total_connections': sum(r.active_connections for r in records),
                'instances': [r.to_dict() for r in records],
            }

    def get_config(self) -> Dict[str, Any]:
        return {
            'algorithm': self.algorithm.value,
            'health_check_interval': self.health_check_interval,
            'health_check_timeout': self.health_check_timeout,
            'max_retries': self.max_retries,
            'request_timeout': self.request_timeout,
            'retry_backoff': self.retry_backoff,
        }

    async def close(self) -> None:
        """Stop health checks and close the HTTP session."""
        await self.stop_health_checks()
        if self._session is not None:
            await self._session.close()
            self._session = None
