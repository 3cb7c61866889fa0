"""Container orchestrators."""

from .base import ContainerOrchestrator, ResourceLimits
from .docker_orchestrator import DockerContainerOrchestrator

__all__ = ["ContainerOrchestrator", "ResourceLimits", "DockerContainerOrchestrator"]
