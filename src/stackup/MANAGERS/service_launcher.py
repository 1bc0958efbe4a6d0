"""
Concurrent, dependency-aware launching of a stack's services.
"""
import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from ..BUILDERS.image_builder import ImageBuilder
from ..errors import (
    DependencyFailedError,
    LaunchCancelledError,
    LaunchError,
    ReadinessTimeoutError,
    StackupError,
)
from ..MODELS.container_image import ContainerImage
from ..MODELS.service_definition import DependencyCondition, MountType
from ..MODELS.service_state import TERMINAL_STATES, LaunchReport, ServiceState, ServiceStatus
from ..MODELS.settings import OrchestratorSettings
from ..MODELS.stack import Stack
from ..PARSERS.stack_validator import StackValidator
from ..REGISTRY.image_resolver import ImageResolver
from ..RUNNERS.dependency_resolver import DependencyResolver
from .discovery import ServiceDiscovery
from .health_monitor import HealthMonitor
from .network_manager import NetworkManager
from .port_registry import PortRegistry
from .process_manager import ProcessManager
from .readiness import ReadinessProbe
from .resource_provisioner import ResourceProvisioner
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ServiceLauncher:
    """
    Drives every service through pending, resolving-image, starting and
    running (or failed), one worker thread per service.

    A service waits for its dependencies to reach the condition it declared;
    when one fails, the dependent fails too without resolving its image.
    Services that do not depend on the failed one are unaffected. Every wait
    is bounded by the settings' timeouts.
    """

    def __init__(self,
                 stack: Stack,
                 networks: NetworkManager,
                 volumes: VolumeManager,
                 resolver: ImageResolver,
                 builder: Optional[ImageBuilder] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 ports: Optional[PortRegistry] = None):
        self.stack = stack
        self.networks = networks
        self.volumes = volumes
        self.resolver = resolver
        self.builder = builder or ImageBuilder(resolver.store, resolver)
        self.settings = settings or OrchestratorSettings()
        self.ports = ports or PortRegistry()
        self.discovery = ServiceDiscovery(stack, networks)

        self.statuses: Dict[str, ServiceStatus] = {n: ServiceStatus(n) for n in stack.services}
        self.managers: Dict[str, ProcessManager] = {}
        self.images: Dict[str, ContainerImage] = {}
        self.probes: Dict[str, ReadinessProbe] = {}
        self._started = {n: threading.Event() for n in stack.services}
        self._ready = {n: threading.Event() for n in stack.services}
        self._exited = {n: threading.Event() for n in stack.services}
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self.monitor = HealthMonitor(self.managers, self.statuses, restart=self.restart,
                                     on_exit=self._on_exit,
                                     interval=self.settings.monitor_interval)

    # Launch

    def launch(self, order: List[str],
               blocked: Optional[Dict[str, StackupError]] = None,
               pull: bool = False, build: bool = False) -> LaunchReport:
        """
        Launches ``order`` concurrently, honouring dependency conditions.

        :param order: Services in dependency order.
        :param blocked: Services that must fail immediately (e.g. a resource
            they reference could not be provisioned), with the reason.
        :param pull: Pull images even if present locally.
        :param build: Rebuild images even if present locally.
        :return: The outcome of every service in ``order``.
        """
        blocked = blocked or {}
        if not order:
            return LaunchReport(order=[], statuses={})
        self._stop.clear()
        if self.monitor.thread is None or not self.monitor.thread.is_alive():
            self.monitor.start()
        workers = min(self.settings.max_workers, len(order))
        logger.info("Launching %s", ", ".join(order))
        # Submitted in dependency order, so a worker only ever waits on
        # services whose workers were picked up before it.
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="launch") as pool:
            futures = [pool.submit(self._launch_service, name, blocked.get(name), pull, build)
                       for name in order]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                # Interrupted (e.g. Ctrl+C): release waiting workers before the pool joins.
                self._stop.set()
                for future in futures:
                    future.cancel()
                raise
        return LaunchReport(order=list(order), statuses={n: self.statuses[n] for n in order})

    def adopt(self, name: str, pid: Optional[int], ports: Optional[Dict[int, int]] = None,
              networks: Optional[List[str]] = None) -> None:
        """Records a service started by an earlier invocation as running."""
        status = self.statuses[name]
        status.pid = pid
        status.ports = dict(ports or {})
        status.networks = list(networks or [])
        status.ready = True
        status.transition(ServiceState.RUNNING, f"already running as pid {pid}")
        self._started[name].set()
        self._ready[name].set()

    def _launch_service(self, name: str, blocked: Optional[StackupError],
                        pull: bool, build: bool) -> None:
        status = self.statuses[name]
        if status.state == ServiceState.RUNNING:
            return
        status.transition(ServiceState.PENDING, "queued")
        try:
            if blocked is not None:
                error = copy.copy(blocked)
                error.service = name
                raise error
            self._await_dependencies(name)
            service = self.stack.services[name]
            status.transition(ServiceState.RESOLVING_IMAGE,
                              service.image or f"build {service.build.context}")
            image = self.resolve_image(name, pull=pull, build=build)
            self._start(name, image)
            self._await_readiness(name)
        except LaunchCancelledError as e:
            self._cancel(name, e)
        except StackupError as e:
            self._fail(name, e)
        except Exception as e:
            logger.exception("[%s] Unexpected error during launch", name)
            self._fail(name, LaunchError(f"{type(e).__name__}: {e}", name))

    def _fail(self, name: str, error: StackupError) -> None:
        status = self.statuses[name]
        if error.service is None:
            error.service = name
        logger.error("%s", error)
        manager = self.managers.pop(name, None)
        if manager is not None:
            manager.stop()
        self._detach(name)
        status.error = error
        status.ready = False
        status.transition(ServiceState.FAILED, str(error))
        for events in (self._started, self._ready, self._exited):
            events[name].set()

    def _cancel(self, name: str, error: LaunchCancelledError) -> None:
        logger.info("%s", error)
        with self._lock:
            manager = self.managers.pop(name, None)
        if manager is not None:
            manager.stop()
            self._detach(name)
        status = self.statuses[name]
        status.ready = False
        if status.state != ServiceState.STOPPED:
            status.transition(ServiceState.STOPPED, str(error))
        for events in (self._started, self._ready, self._exited):
            events[name].set()

    def _await_dependencies(self, name: str) -> None:
        service = self.stack.services[name]
        deadline = time.monotonic() + self.settings.dependency_timeout
        for dependency, condition in service.depends_on.items():
            if condition == DependencyCondition.COMPLETED:
                event = self._exited[dependency]
            elif condition == DependencyCondition.HEALTHY:
                event = self._ready[dependency]
            else:
                event = self._started[dependency]
            logger.debug("[%s] Waiting for %s (%s)", name, dependency, condition.value)
            self._wait(event, deadline, name, dependency, condition)

            dep = self.statuses[dependency]
            if condition == DependencyCondition.COMPLETED:
                if dep.exit_code != 0:
                    cause = dep.error or LaunchError(f"exited with code {dep.exit_code}",
                                                     dependency)
                    raise DependencyFailedError(name, dependency, cause)
            elif dep.state == ServiceState.FAILED:
                raise DependencyFailedError(name, dependency, dep.error)
            elif condition == DependencyCondition.HEALTHY and not dep.ready:
                raise ReadinessTimeoutError(
                    name, self.settings.readiness_timeout,
                    f"dependency '{dependency}' never became ready")

    def _wait(self, event: threading.Event, deadline: float, name: str, dependency: str,
              condition: DependencyCondition) -> None:
        while True:
            if self._stop.is_set():
                raise LaunchCancelledError(name, f"stopped while waiting for '{dependency}'")
            if event.is_set():
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeoutError(
                    name, self.settings.dependency_timeout,
                    f"waiting for '{dependency}' to reach {condition.value}")
            event.wait(min(remaining, 0.1))

    def resolve_image(self, name: str, pull: bool = False, build: bool = False) -> ContainerImage:
        """
        Finds, pulls or builds the image of service ``name``.

        :raises ImageUnresolvedError: If a declared image cannot be resolved.
        :raises BuildFailedError: If the build recipe fails.
        """
        service = self.stack.services[name]
        image = None
        if service.build is not None:
            if not build:
                image = self.resolver.store.get(service.image_tag)
            if image is None:
                context = StackValidator(self.stack).build_context_path(service.build.context)
                image = self.builder.build(name, service.build, context, service.image_tag,
                                           timeout=self.settings.build_timeout)
        else:
            image = self.resolver.resolve(name, service.image, pull=pull)
        self.images[name] = image
        return image

    def _volume_names(self, name: str) -> Dict[str, str]:
        return {m.source: ResourceProvisioner.volume_name(self.stack, m.source)
                for m in self.stack.services[name].volumes
                if m.type == MountType.VOLUME and m.source}

    def _start(self, name: str, image: ContainerImage) -> None:
        service = self.stack.services[name]
        status = self.statuses[name]
        status.transition(ServiceState.STARTING, image.reference)

        status.ports = self.ports.claim(name, service.ports)
        context = self.discovery.network_context(name)
        for network in service.networks:
            self.networks.connect_service(ResourceProvisioner.network_name(self.stack, network),
                                          name, service.aliases)
        status.networks = context.networks

        manager = ProcessManager(service, self.stack, self.volumes, self.settings)
        with self._lock:
            self.managers[name] = manager
        status.pid = manager.start(image, self._volume_names(name), context.environment,
                                   context.hosts)
        status.environment = manager.environment
        if self.settings.startup_grace:
            self._stop.wait(self.settings.startup_grace)

        probe = None
        if service.health_check is not None:
            probe = ReadinessProbe(name, service.health_check, env=manager.environment,
                                   working_dir=manager.working_dir)
            self.probes[name] = probe
        status.transition(ServiceState.RUNNING, f"pid {status.pid}")
        self.monitor.watch(name, probe)
        self._started[name].set()

    def _await_readiness(self, name: str) -> None:
        status = self.statuses[name]
        if self._stop.is_set():
            raise LaunchCancelledError(name)
        probe = self.probes.get(name)
        if probe is None:
            status.ready = True
            self._ready[name].set()
            return
        try:
            probe.wait_until_ready(self.settings.readiness_timeout, self._stop,
                                   lambda: status.state not in TERMINAL_STATES)
        except ReadinessTimeoutError as e:
            logger.warning("%s", e)
            status.error = e
        except LaunchError as e:
            if self._stop.is_set():
                raise LaunchCancelledError(name) from e
            logger.warning("%s", e)
        else:
            status.ready = True
        self._ready[name].set()

    # Supervision

    def _on_exit(self, name: str, exit_code: Optional[int]) -> None:
        self.ports.release(name)
        self._detach(name)
        for events in (self._started, self._ready, self._exited):
            events[name].set()

    def restart(self, name: str) -> None:
        """Starts a service again after it exited; called by the health monitor."""
        status = self.statuses[name]
        manager = self.managers.get(name)
        if manager is None or self._stop.is_set():
            if status.state == ServiceState.RESTARTING:
                status.transition(ServiceState.STOPPED, "restart dropped: stack is stopping")
                self._on_exit(name, status.exit_code)
            return
        status.restart_count += 1
        status.transition(ServiceState.STARTING, f"restart {status.restart_count}")
        try:
            status.pid = manager.restart()
        except StackupError as e:
            self._fail(name, e)
            return
        status.transition(ServiceState.RUNNING, f"pid {status.pid}")
        self.monitor.watch(name, self.probes.get(name))

    # Teardown

    def _detach(self, name: str) -> None:
        self.ports.release(name)
        for network in self.stack.services[name].networks:
            self.networks.disconnect_service(
                ResourceProvisioner.network_name(self.stack, network), name)

    def stop(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Stops running services in reverse dependency order.

        :return: The services that were stopped.
        """
        self._stop.set()
        self.monitor.stop()
        wanted = set(names) if names is not None else set(self.stack.services)
        stopped = []
        for name in DependencyResolver().teardown_order(self.stack):
            if name not in wanted:
                continue
            with self._lock:
                manager = self.managers.pop(name, None)
            if manager is None:
                continue
            manager.stop()
            self._detach(name)
            status = self.statuses[name]
            if status.state != ServiceState.FAILED:
                status.transition(ServiceState.STOPPED, "stopped by operator")
            stopped.append(name)
        return stopped
