"""
Readiness probes: deciding when a running service can accept work.
"""
import logging
import socket
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from ..errors import LaunchCancelledError, LaunchError, ReadinessTimeoutError
from ..MODELS.service_definition import HealthCheck
from .network_manager import LOOPBACK

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    success: bool
    output: str = ""


class ReadinessProbe:
    """
    Runs a service's health check.

    Supported tests: ``["CMD", exe, args...]``, ``["CMD-SHELL", "script"]``,
    ``["TCP", "<port>"]`` and ``["NONE"]``.
    """

    def __init__(self, service: str, check: HealthCheck,
                 env: Optional[Dict[str, str]] = None,
                 working_dir: Optional[str] = None):
        """
        :param service: Service name.
        :param check: The declared health check.
        :param env: Environment the check command runs with.
        :param working_dir: Directory the check command runs in.
        """
        self.service = service
        self.check = check
        self.env = env
        self.working_dir = working_dir
        self.last_output = ""

    def run(self) -> ProbeResult:
        test = self.check.test
        kind = test[0].upper() if test else "NONE"
        if kind == "NONE":
            return ProbeResult(True)
        if kind == "TCP":
            return self._tcp(int(test[1]))
        if kind == "CMD-SHELL":
            return self._command(" ".join(test[1:]), shell=True)
        if kind == "CMD":
            return self._command(test[1:], shell=False)
        return self._command(test, shell=False)

    def _tcp(self, port: int) -> ProbeResult:
        # The process listens natively on its container port.
        try:
            with socket.create_connection((LOOPBACK, port), timeout=self.check.timeout):
                return ProbeResult(True)
        except OSError as e:
            return ProbeResult(False, f"tcp {port}: {e}")

    def _command(self, command, shell: bool) -> ProbeResult:
        try:
            result = subprocess.run(
                command,
                shell=shell,
                env=self.env,
                cwd=self.working_dir,
                capture_output=True,
                timeout=self.check.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(False, "health check timed out")
        except OSError as e:
            return ProbeResult(False, str(e))
        if result.returncode == 0:
            return ProbeResult(True, (result.stdout or "")[:500])
        return ProbeResult(False, (result.stderr or "")[:500] or f"exit code {result.returncode}")

    def attempt(self, is_alive: Optional[Callable[[], bool]] = None) -> bool:
        if is_alive is not None and not is_alive():
            raise LaunchError("process exited before becoming ready", self.service)
        result = self.run()
        self.last_output = result.output
        return result.success

    def wait_until_ready(self, timeout: float,
                         stop_event: Optional[threading.Event] = None,
                         is_alive: Optional[Callable[[], bool]] = None) -> None:
        """
        Polls the check every ``interval`` until it succeeds.

        :raises ReadinessTimeoutError: If the check has not passed within
            ``timeout`` seconds (start period included).
        :raises LaunchError: If the process exits while waiting.
        :raises LaunchCancelledError: If ``stop_event`` is set while waiting.
        """
        stop = stop_after_delay(timeout)
        if stop_event is not None:
            stop = stop | stop_when_event_set(stop_event)
        if self.check.start_period:
            (stop_event or threading.Event()).wait(min(self.check.start_period, timeout))
        retryer = Retrying(
            stop=stop,
            wait=wait_fixed(self.check.interval),
            retry=retry_if_result(lambda ready: not ready),
        )
        try:
            if stop_event is not None and stop_event.is_set():
                raise LaunchCancelledError(self.service)
            retryer(self.attempt, is_alive)
        except RetryError as e:
            if stop_event is not None and stop_event.is_set():
                raise LaunchCancelledError(self.service) from e
            raise ReadinessTimeoutError(self.service, timeout, self.last_output) from e
        logger.info("[%s] Ready", self.service)
