"""
Models for defining services, including restart policies, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.

    ``max_retries`` only bounds ``on-failure``; ``always`` and
    ``unless-stopped`` retry until an operator stops the stack.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = Field(default=5, ge=0)
    delay: float = Field(default=1.0, ge=0)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    max_delay: float = Field(default=60.0, gt=0)


class HealthCheck(BaseModel):
    """
    Readiness probe for a service.

    ``test`` follows the compose forms ``["CMD", ...]`` and
    ``["CMD-SHELL", "..."]``, plus ``["TCP", "<container port>"]`` which
    succeeds once the port accepts connections.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 1.0
    timeout: float = 5.0
    retries: int = 3
    start_period: float = 0.0


class DependencyCondition(str, Enum):
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED = "service_completed_successfully"


class MountType(str, Enum):
    VOLUME = "volume"
    BIND = "bind"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    type: MountType = MountType.VOLUME
    read_only: bool = False


class PortMapping(BaseModel):
    """
    A published port: ``host`` on the host side, ``container`` inside the service.
    """
    model_config = ConfigDict(frozen=True)

    container: int = Field(gt=0, lt=65536)
    host: Optional[int] = Field(default=None, gt=0, lt=65536)
    protocol: str = "tcp"
    host_ip: Optional[str] = None


class BuildSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    context: str
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = {}


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the stack descriptor.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: Optional[str] = None
    build: Optional[BuildSource] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []
    hostname: Optional[str] = None

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: Dict[str, DependencyCondition] = {}

    # Metadata
    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _image_or_build(self) -> "ServiceDefinition":
        if bool(self.image) == bool(self.build):
            raise ValueError(
                f"service '{self.name}' must declare exactly one of 'image' or 'build'"
            )
        return self

    @property
    def image_tag(self) -> str:
        """Tag under which the service's image is stored locally."""
        if self.image:
            return self.image
        return f"stackup/{self.name}:latest"

    @property
    def aliases(self) -> List[str]:
        names = [self.name]
        if self.hostname and self.hostname != self.name:
            names.append(self.hostname)
        return names
