"""
Validation of stack-wide invariants, run before any side effect.
"""
import os
from typing import Dict, List, Tuple

from ..errors import (
    BuildContextError,
    DanglingNetworkError,
    DanglingVolumeError,
    DependencyCycleError,
    DescriptorError,
    PortConflictError,
    UnknownDependencyError,
)
from ..MODELS.service_definition import DependencyCondition, MountType
from ..MODELS.stack import Stack
from ..RUNNERS.dependency_resolver import find_cycle


class StackValidator:
    """
    Checks the invariants a stack must satisfy as a whole.

    Each check raises the first violation it finds; checks run in the
    order references, dependencies, ports, build contexts.
    """

    def __init__(self, stack: Stack):
        self.stack = stack

    def validate(self) -> None:
        self.check_references()
        self.check_dependencies()
        self.check_ports()
        self.check_build_contexts()

    def check_references(self) -> None:
        for name, svc in self.stack.services.items():
            for network in svc.networks:
                if network not in self.stack.networks:
                    raise DanglingNetworkError(name, network)
            for mount in svc.volumes:
                if mount.type == MountType.VOLUME and mount.source \
                        and mount.source not in self.stack.volumes:
                    raise DanglingVolumeError(name, mount.source)

    def check_dependencies(self) -> None:
        graph = {}
        for name, svc in self.stack.services.items():
            for dep in svc.depends_on:
                if dep not in self.stack.services:
                    raise UnknownDependencyError(name, dep)
            graph[name] = set(svc.depends_on)
        cycle = find_cycle(graph)
        if cycle:
            raise DependencyCycleError(cycle)
        for name, svc in self.stack.services.items():
            for dep, condition in svc.depends_on.items():
                if condition == DependencyCondition.HEALTHY \
                        and self.stack.services[dep].health_check is None:
                    raise DescriptorError(
                        f"depends on '{dep}' being healthy, but '{dep}' declares "
                        f"no healthcheck", name)

    def check_ports(self) -> None:
        claims: Dict[Tuple[int, str], List[str]] = {}
        for name, svc in self.stack.services.items():
            for mapping in svc.ports:
                if mapping.host is None:
                    continue
                owners = claims.setdefault((mapping.host, mapping.protocol), [])
                if name not in owners:
                    owners.append(name)
                elif owners == [name]:
                    # Same service publishing one host port twice is still a clash.
                    owners.append(name)
        for (port, protocol), owners in claims.items():
            if len(owners) > 1:
                raise PortConflictError(port, owners, protocol)

    def check_build_contexts(self) -> None:
        for name, svc in self.stack.services.items():
            if svc.build is None:
                continue
            context = self.build_context_path(svc.build.context)
            if not os.path.isdir(context):
                raise BuildContextError(name, svc.build.context, "is not an existing directory")
            if not os.access(context, os.R_OK | os.X_OK):
                raise BuildContextError(name, svc.build.context, "is not readable")
            recipe = os.path.join(context, svc.build.dockerfile)
            if not os.path.isfile(recipe):
                raise BuildContextError(
                    name, svc.build.context,
                    f"does not contain a build recipe '{svc.build.dockerfile}'")

    def build_context_path(self, context: str) -> str:
        return os.path.abspath(os.path.join(self.stack.base_dir, os.path.expanduser(context)))
