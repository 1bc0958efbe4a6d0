# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Error taxonomy for stack orchestration.

Every error carries the service it concerns (when there is one) and the
phase it was raised in, and maps to a process exit code used by the CLI.
"""
from typing import Iterable, List, Optional


class StackupError(Exception):
    """Base class for all orchestration errors."""

    exit_code = 1
    phase = "orchestration"

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service

    def __str__(self) -> str:
        if self.service:
            return f"[{self.service}] {self.phase}: {self.message}"
        return f"{self.phase}: {self.message}"


# Configuration


class ConfigurationError(StackupError):
    """Raised before any service starts when the stack is not valid."""

    exit_code = 2
    phase = "configuration"


class MissingKeyError(ConfigurationError):
    """A placeholder references a key absent from the environment source."""

    def __init__(self, key: str, service: Optional[str] = None, detail: Optional[str] = None):
        where = f"service '{service}'" if service else "the descriptor"
        message = f"missing environment key '{key}' referenced in {where}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, service)
        self.key = key


class DescriptorError(ConfigurationError):
    """The descriptor is syntactically or structurally invalid."""


class DanglingNetworkError(ConfigurationError):
    def __init__(self, service: str, network: str):
        super().__init__(f"network '{network}' is not defined in the stack", service)
        self.network = network


class DanglingVolumeError(ConfigurationError):
    def __init__(self, service: str, volume: str):
        super().__init__(f"volume '{volume}' is not defined in the stack", service)
        self.volume = volume


class UnknownDependencyError(ConfigurationError):
    def __init__(self, service: str, dependency: str):
        super().__init__(f"depends on undefined service '{dependency}'", service)
        self.dependency = dependency


class DependencyCycleError(ConfigurationError):
    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


class PortConflictError(ConfigurationError):
    def __init__(self, port: int, services: Iterable[str], protocol: str = "tcp"):
        self.port = port
        self.protocol = protocol
        self.services: List[str] = list(services)
        super().__init__(
            f"host port {port}/{protocol} is claimed by more than one service: "
            f"{', '.join(self.services)}"
        )


class BuildContextError(ConfigurationError):
    def __init__(self, service: str, context: str, reason: str):
        super().__init__(f"build context '{context}' {reason}", service)
        self.context = context


# Provisioning


class ProvisioningError(StackupError):
    """A network or volume could not be created or reused."""

    exit_code = 3
    phase = "provisioning"

    def __init__(self, kind: str, name: str, reason: str):
        super().__init__(f"{kind} '{name}': {reason}")
        self.kind = kind
        self.name = name


# Launch


class LaunchError(StackupError):
    """Fatal to one service; independent services keep going."""

    exit_code = 4
    phase = "launch"


class ImageUnresolvedError(LaunchError):
    phase = "image unresolved"

    def __init__(self, service: str, image: str, reason: str):
        super().__init__(f"image '{image}' could not be resolved: {reason}", service)
        self.image = image


class BuildFailedError(LaunchError):
    phase = "build failed"


class MountError(LaunchError):
    phase = "mount"

    def __init__(self, service: str, source: str, target: str, reason: str):
        super().__init__(f"{source} -> {target}: {reason}", service)
        self.source = source
        self.target = target


class HostPathMissingError(MountError):
    def __init__(self, service: str, source: str, target: str):
        super().__init__(service, source, target, "host path does not exist")


class MountTypeMismatchError(MountError):
    pass


class PortInUseError(LaunchError):
    def __init__(self, service: str, port: int, holder: Optional[str] = None,
                 process: Optional[str] = None):
        if holder:
            holder_text = f"service '{holder}'"
        else:
            holder_text = f"another process on the host ({process})" if process \
                else "another process on the host"
        super().__init__(f"host port {port} is already in use by {holder_text}", service)
        self.port = port


class DependencyFailedError(LaunchError):
    phase = "dependency"

    def __init__(self, service: str, dependency: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"dependency '{dependency}' did not start{detail}", service)
        self.dependency = dependency
        self.cause = cause


class ProcessStartError(LaunchError):
    pass


class LaunchCancelledError(StackupError):
    """The stack was stopped while the service was still starting."""

    phase = "cancelled"

    def __init__(self, service: str, detail: str = "stopped before it became ready"):
        super().__init__(detail, service)


# Readiness / discovery


class ReadinessTimeoutError(StackupError):
    """The service may still become ready; retry rather than reconfigure."""

    exit_code = 5
    phase = "readiness"

    def __init__(self, service: str, timeout: float, detail: str = ""):
        message = f"not ready after {timeout:.1f}s"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, service)
        self.timeout = timeout


class DiscoveryError(StackupError):
    exit_code = 6
    phase = "discovery"


class HostnameUnresolvableError(DiscoveryError):
    """The caller is not a member of any network the target is attached to."""

    def __init__(self, hostname: str, caller: Optional[str]):
        context = f"service '{caller}'" if caller else "the host"
        super().__init__(
            f"hostname '{hostname}' is not resolvable from {context}; "
            f"run the command inside a service attached to the same network",
            caller,
        )
        self.hostname = hostname
        self.caller = caller


class ServiceConnectionError(DiscoveryError):
    """The hostname resolved but nothing accepted the connection."""

    def __init__(self, hostname: str, port: int, caller: Optional[str], reason: str):
        super().__init__(f"can't reach {hostname}:{port}: {reason}", caller)
        self.hostname = hostname
        self.port = port


class ServiceNotRunningError(StackupError):
    phase = "exec"

    def __init__(self, service: str):
        super().__init__("service is not running", service)
