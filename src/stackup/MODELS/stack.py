"""
Models for the overall stack: services, networks and volumes.
"""
from typing import Dict, List
from pydantic import BaseModel, ConfigDict
from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class NetworkDefinition(BaseModel):
    """
    A named isolation domain. Services attached to the same network can
    resolve each other by service name.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "bridge"
    external: bool = False
    internal: bool = False
    labels: Dict[str, str] = {}


class VolumeDefinition(BaseModel):
    """
    A named persistent storage unit whose lifecycle is independent of any service.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "local"
    external: bool = False
    labels: Dict[str, str] = {}


class Stack(BaseModel):
    """
    Complete, validated configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.

    Services keep their declaration order, which is used as the tie-break
    when ordering launches.
    """
    model_config = ConfigDict(frozen=True)

    project: str = "stackup"
    base_dir: str = "."
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}

    def networks_of(self, service: str) -> List[str]:
        return list(self.services[service].networks)

    def scoped_name(self, name: str) -> str:
        """Name a resource is provisioned under, e.g. ``attendance_backend``."""
        return f"{self.project}_{name}"
