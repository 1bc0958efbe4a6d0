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
Orchestration for multiple services: provisioning, launch, supervision and teardown.
"""
import logging
import os
import shutil
import socket
import subprocess
from typing import Dict, Iterable, List, Optional, Tuple

from ..BUILDERS.image_builder import ImageBuilder
from ..errors import DescriptorError, ProcessStartError, ServiceNotRunningError
from ..MODELS.container_image import ContainerImage
from ..MODELS.service_state import LaunchReport, ServiceState
from ..MODELS.settings import OrchestratorSettings
from ..MODELS.stack import Stack
from ..PARSERS.stack_validator import StackValidator
from ..REGISTRY.image_resolver import ImageResolver
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.registry_client import RegistryClient
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.process_runner import pid_alive, terminate_tree
from .network_manager import NetworkManager
from .process_manager import ProcessManager
from .resource_provisioner import ProvisioningReport, ResourceProvisioner
from .service_launcher import ServiceLauncher
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

ACTIVE_STATES = {ServiceState.STARTING, ServiceState.RUNNING, ServiceState.RESTARTING}


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self, stack: Stack,
                 settings: Optional[OrchestratorSettings] = None,
                 registry_client: Optional[RegistryClient] = None):
        """
        Initializes the orchestrator.

        :param stack: The parsed and validated stack.
        :param settings: Timeouts and state directory.
        :param registry_client: Client used to pull images (a default one otherwise).
        """
        self.stack = stack
        self.settings = settings or OrchestratorSettings()
        self.state_dir = self.settings.state_path(stack.base_dir)

        self.network_manager = NetworkManager(self.state_dir)
        self.volume_manager = VolumeManager(self.state_dir, stack.base_dir)
        self.provisioner = ResourceProvisioner(self.network_manager, self.volume_manager)
        self.image_store = ImageStore(os.path.join(self.state_dir, "images"))
        self.image_resolver = ImageResolver(self.image_store, registry_client,
                                            timeout=self.settings.pull_timeout)
        self.builder = ImageBuilder(self.image_store, self.image_resolver)
        self.resolver = DependencyResolver()
        self.launcher = ServiceLauncher(stack, self.network_manager, self.volume_manager,
                                        self.image_resolver, self.builder, self.settings)
        self.discovery = self.launcher.discovery
        self.state = StateStore(os.path.join(self.state_dir, "state.json"))
        self.last_provisioning: Optional[ProvisioningReport] = None

    def _check_services(self, services: Optional[Iterable[str]]) -> Optional[List[str]]:
        if services is None:
            return None
        services = list(services)
        unknown = [s for s in services if s not in self.stack.services]
        if unknown:
            raise DescriptorError(f"no such service: {', '.join(unknown)}")
        return services or None

    def up(self, services: Optional[Iterable[str]] = None,
           pull: bool = False, build: bool = False) -> LaunchReport:
        """
        Provisions resources and starts services in dependency order.

        :param services: Start only these services and their dependencies.
        :param pull: Pull images even when present locally.
        :param build: Rebuild images of build services.
        :raises ConfigurationError: Before any side effect, if the stack is invalid.
        """
        StackValidator(self.stack).validate()
        order = self.resolver.resolve_order(self.stack, only=self._check_services(services))

        for name, entry in self.state.running().items():
            if name in order:
                logger.info("[%s] Already running (pid %s)", name, entry.get("pid"))
                self.launcher.adopt(name, entry.get("pid"),
                                    {int(k): v for k, v in entry.get("ports", {}).items()},
                                    entry.get("networks"))

        self.last_provisioning = self.provisioner.provision(self.stack)
        blocked = self.provisioner.blocked_services(self.stack, self.last_provisioning)
        try:
            report = self.launcher.launch(order, blocked, pull=pull, build=build)
        finally:
            self.save_state()
        for name, error in report.failed.items():
            logger.error("%s", error)
        return report

    def save_state(self) -> None:
        logs = {name: manager.log_path for name, manager in self.launcher.managers.items()}
        self.state.save(self.stack.project, self.launcher.statuses, logs)

    def is_active(self) -> bool:
        """True while any service started by this invocation may still run."""
        return any(s.state in ACTIVE_STATES for name, s in self.launcher.statuses.items()
                   if name in self.launcher.managers)

    def down(self, remove_volumes: bool = False) -> List[str]:
        """
        Stops all services in reverse dependency order, then removes the
        stack's networks and, when ``remove_volumes`` is set, its volumes.

        :return: Keys of the removed resources.
        """
        stopped = self.launcher.stop()
        recorded = self.state.services()
        for name in self.resolver.teardown_order(self.stack):
            entry = recorded.get(name)
            if name in stopped or not entry or not pid_alive(entry.get("pid")):
                continue
            logger.info("[%s] Stopping pid %s", name, entry["pid"])
            terminate_tree(entry["pid"], self.settings.stop_timeout)
            stopped.append(name)

        for name, svc in self.stack.services.items():
            for network in svc.networks:
                self.network_manager.disconnect_service(
                    ResourceProvisioner.network_name(self.stack, network), name)
            container_dir = self.settings.state_path(
                self.stack.base_dir, "containers", self.stack.scoped_name(name))
            if os.path.isdir(container_dir):
                shutil.rmtree(container_dir)

        removed = self.provisioner.teardown(self.stack, remove_volumes=remove_volumes)
        self.state.forget(list(recorded))
        logger.info("Stopped %d service(s), removed %d resource(s)", len(stopped), len(removed))
        return removed

    def build(self, service: str) -> Tuple[ContainerImage, List[str]]:
        """
        Builds (or rebuilds) the image of a build service.

        :return: The image, and the services that depend on ``service``
            directly or transitively; they keep running against the old
            image until restarted.
        """
        self._check_services([service])
        svc = self.stack.services[service]
        if svc.build is None:
            raise DescriptorError("has no build section", service)
        StackValidator(self.stack).check_build_contexts()
        image = self.launcher.resolve_image(service, build=True)
        dependents = self.resolver.dependents_of(self.stack, service)
        if dependents:
            logger.info("[%s] Rebuilt; dependents to restart: %s", service, ", ".join(dependents))
        return image, dependents

    def pull(self, service: str) -> ContainerImage:
        self._check_services([service])
        svc = self.stack.services[service]
        if svc.image is None:
            raise DescriptorError("has no image to pull", service)
        return self.launcher.resolve_image(service, pull=True)

    def is_running(self, service: str) -> bool:
        status = self.launcher.statuses.get(service)
        if status is not None and service in self.launcher.managers:
            return status.state == ServiceState.RUNNING
        return service in self.state.running()

    def exec(self, service: str, command: List[str]) -> int:
        """
        Runs a one-off command as a member of ``service``'s networks.

        The command gets the service's environment, the discovery variables
        of its peers and a hosts file listing the names visible to it.

        :return: The command's exit code.
        :raises ServiceNotRunningError: If the service is not running.
        :raises ProcessStartError: If the command cannot be executed.
        """
        self._check_services([service])
        if not self.is_running(service):
            raise ServiceNotRunningError(service)
        svc = self.stack.services[service]
        manager = ProcessManager(svc, self.stack, self.volume_manager, self.settings)
        manager.image = self.image_store.get(svc.image_tag)

        context = self.discovery.network_context(service)
        extra = dict(context.environment)
        hosts_path = os.path.join(manager.container_dir, "hosts")
        if os.path.exists(hosts_path):
            extra["STACKUP_HOSTS_FILE"] = hosts_path
        env = manager.build_environment(extra)
        cwd = manager.working_dir if os.path.isdir(manager.working_dir) else self.stack.base_dir

        logger.info("[%s] exec %s", service, " ".join(command))
        try:
            return subprocess.run(command, env=env, cwd=cwd).returncode
        except OSError as e:
            raise ProcessStartError(f"cannot execute '{command[0]}': {e}", service) from e

    def connect(self, hostname: str, port: int, caller: Optional[str] = None) -> socket.socket:
        """Connects to a service by name, as seen from ``caller`` (None for the host)."""
        return self.discovery.connect(hostname, port, caller)

    def ps(self) -> List[Dict]:
        """
        Returns one row per service: state, pid, ports and restart count.
        """
        recorded = self.state.services()
        rows = []
        for name in self.stack.services:
            status = self.launcher.statuses[name]
            if status.history:
                row = {"service": name, "state": status.state.value, "pid": status.pid,
                       "ports": dict(status.ports), "restarts": status.restart_count,
                       "error": str(status.error) if status.error else None,
                       "health": self.launcher.monitor.get_health(name).status.value}
            elif name in recorded:
                entry = recorded[name]
                state = entry.get("state", "stopped")
                if state == "running" and not pid_alive(entry.get("pid")):
                    state = "exited"
                row = {"service": name, "state": state, "pid": entry.get("pid"),
                       "ports": {int(k): v for k, v in entry.get("ports", {}).items()},
                       "restarts": entry.get("restart_count", 0), "error": entry.get("error"),
                       "health": None}
            else:
                row = {"service": name, "state": "not created", "pid": None, "ports": {},
                       "restarts": 0, "error": None, "health": None}
            rows.append(row)
        return rows
