"""Container orchestrator interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.types import InstanceDescriptor


@dataclass
class ResourceLimits:
    """Per-instance resource limits."""
    memory_bytes: int = 512 * 1024 * 1024
    cpu_shares: int = 1024
    nano_cpus: Optional[int] = None


class ContainerOrchestrator(ABC):
    """Starts, stops and lists instances of a service in a container runtime.

    Implementations hold no authoritative state of their own; every query
    is answered by the runtime.
    """

    @abstractmethod
    async def start_instance(
        self,
        service_name: str,
        index: int = 0,
        environment: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
        resource_limits: Optional[ResourceLimits] = None
    ) -> InstanceDescriptor:
        """Start instance ``index`` of ``service_name``.

        Args:
            service_name: Service the instance belongs to
            index: Instance index; determines name and port
            environment: Extra environment variables
            labels: Extra runtime labels
            resource_limits: Resource limits for a newly created instance

        Returns:
            Descriptor of the running instance
        """
        pass

    @abstractmethod
    async def stop_instance(self, instance_id: str) -> bool:
        """Stop and remove an instance. A missing instance counts as stopped."""
        pass

    @abstractmethod
    async def get_running_instances(self, service_name: str) -> List[InstanceDescriptor]:
        pass

    @abstractmethod
    async def get_instance_details(self, instance_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Orchestrator-level health, never instance-level."""
        pass

    def get_config(self) -> Dict[str, Any]:
        return {'type': type(self).__name__}
