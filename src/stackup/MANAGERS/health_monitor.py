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
Health monitoring for services, including process status, health check commands,
and restart policy management with backoff.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from ..errors import LaunchError
from ..MODELS.service_definition import BackoffStrategy, RestartPolicy, RestartPolicyCondition
from ..MODELS.service_state import ServiceState, ServiceStatus
from .process_manager import ProcessManager
from .readiness import ReadinessProbe

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    last_check: Optional[str] = None
    last_output: str = ""
    started_at: float = 0.0


def restart_delay(policy: RestartPolicy, attempt: int) -> float:
    """
    Delay before restart number ``attempt`` (0-based).
    """
    if policy.backoff == BackoffStrategy.FIXED:
        return min(policy.delay, policy.max_delay)
    return min(policy.delay * (2 ** attempt), policy.max_delay)


def should_restart(policy: RestartPolicy, exit_code: Optional[int], restart_count: int) -> bool:
    """
    Decides whether an exited service is restarted.

    ``on-failure`` restarts on a non-zero exit while under ``max_retries``;
    ``always`` and ``unless-stopped`` restart until the operator stops the stack.
    """
    condition = policy.condition
    if condition == RestartPolicyCondition.NO:
        return False
    if condition == RestartPolicyCondition.ON_FAILURE:
        return exit_code not in (None, 0) and restart_count < policy.max_retries
    return condition in (RestartPolicyCondition.ALWAYS, RestartPolicyCondition.UNLESS_STOPPED)


class HealthMonitor:
    """
    Watches running services: detects exits, applies restart policies and
    re-runs health checks.

    Restarts are scheduled rather than slept on, so one service backing off
    never delays checks of the others.
    """

    def __init__(
        self,
        managers: Dict[str, ProcessManager],
        statuses: Dict[str, ServiceStatus],
        restart: Callable[[str], None],
        on_exit: Optional[Callable[[str, Optional[int]], None]] = None,
        interval: float = 1.0,
    ):
        """
        :param managers: Managers of the services to watch, filled in as they start.
        :param statuses: Shared service statuses.
        :param restart: Called to restart a service once its backoff has elapsed.
        :param on_exit: Called when a service has exited for good.
        :param interval: Seconds between passes.
        """
        self.managers = managers
        self.statuses = statuses
        self.restart = restart
        self.on_exit = on_exit
        self.interval = interval
        self.probes: Dict[str, ReadinessProbe] = {}
        self._health: Dict[str, ServiceHealth] = {}
        self._scheduled: Dict[str, float] = {}
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.thread: Optional[threading.Thread] = None

    def start(self):
        """
        Starts the health monitoring thread.
        """
        self._stop.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="health-monitor",
                                       daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread; pending restarts are dropped.
        """
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=max(self.interval * 2, 1))
        self._scheduled.clear()

    def watch(self, name: str, probe: Optional[ReadinessProbe] = None) -> None:
        """Registers (or re-registers after a restart) a started service."""
        with self._lock:
            self._health[name] = ServiceHealth(
                status=HealthStatus.STARTING if probe else HealthStatus.NONE,
                started_at=time.monotonic())
            if probe is not None:
                self.probes[name] = probe

    def get_health(self, service_name: str) -> ServiceHealth:
        return self._health.get(service_name, ServiceHealth())

    def _monitor_loop(self):
        while not self._stop.wait(self.interval):
            self.check_once()

    def check_once(self) -> None:
        """One pass over every watched service."""
        now = time.monotonic()
        for name, manager in list(self.managers.items()):
            if self._stop.is_set():
                return
            status = self.statuses[name]
            if status.state != ServiceState.RUNNING:
                continue
            if not manager.runner.is_running():
                self._handle_exit(name, manager, status, now)
                continue
            self._check_health(name, status, now)

        for name, due in list(self._scheduled.items()):
            if now >= due and not self._stop.is_set():
                del self._scheduled[name]
                logger.info("[%s] Restarting (attempt %d)", name,
                            self.statuses[name].restart_count + 1)
                self.restart(name)

    def _handle_exit(self, name: str, manager: ProcessManager, status: ServiceStatus,
                     now: float) -> None:
        exit_code = manager.runner.get_exit_code()
        status.exit_code = exit_code
        status.ready = False
        policy = manager.service_def.restart_policy
        logger.info("[%s] Exited with code %s", name, exit_code)

        if should_restart(policy, exit_code, status.restart_count):
            delay = restart_delay(policy, status.restart_count)
            status.transition(ServiceState.RESTARTING,
                              f"exited with code {exit_code}; restarting in {delay:.1f}s")
            self._scheduled[name] = now + delay
            return

        if exit_code == 0:
            status.transition(ServiceState.STOPPED, "exited with code 0")
        else:
            detail = f"exited with code {exit_code}"
            if policy.condition == RestartPolicyCondition.ON_FAILURE:
                detail += f" after {status.restart_count} restart(s)"
            status.error = LaunchError(detail, name)
            status.transition(ServiceState.FAILED, detail)
        if self.on_exit:
            self.on_exit(name, exit_code)

    def _check_health(self, name: str, status: ServiceStatus, now: float) -> None:
        probe = self.probes.get(name)
        health = self._health.get(name)
        if probe is None or health is None:
            return
        if now - health.started_at < probe.check.start_period:
            return
        result = probe.run()
        health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        health.last_output = result.output
        if result.success:
            health.failing_streak = 0
            health.status = HealthStatus.HEALTHY
            status.ready = True
            return
        health.failing_streak += 1
        if health.failing_streak >= probe.check.retries:
            if health.status != HealthStatus.UNHEALTHY:
                logger.warning("[%s] Unhealthy: %s", name, result.output)
            health.status = HealthStatus.UNHEALTHY
            status.ready = False
