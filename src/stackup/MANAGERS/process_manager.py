"""
Lifecycle management for individual service processes.
"""
import logging
import os
import shutil
from typing import Dict, List, Optional

from ..errors import ProcessStartError
from ..MODELS.container_image import ContainerImage
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.settings import OrchestratorSettings
from ..MODELS.stack import Stack
from ..RUNNERS.process_runner import ProcessRunner
from .volume_manager import MountedPath, VolumeManager

logger = logging.getLogger(__name__)

# Host variables a native process needs to run at all.
HOST_PASSTHROUGH = ("PATH", "HOME", "LANG", "LC_ALL", "TZ", "TMPDIR", "USER", "SYSTEMROOT")


class ProcessManager:
    """
    Manages the lifecycle of a single service.

    Each service gets its own copy of the image's root filesystem under
    ``<state>/containers/<project>_<service>/rootfs``; mounts are linked into
    that copy and the process runs from its working directory there.
    """
    def __init__(self,
                 service_def: ServiceDefinition,
                 stack: Stack,
                 volumes: VolumeManager,
                 settings: Optional[OrchestratorSettings] = None):
        """
        Initializes the process manager for a service.

        :param service_def: Definition of the service.
        :param stack: The stack the service belongs to.
        :param volumes: Volume manager used to mount the service's volumes.
        :param settings: Orchestrator settings (state directory, timeouts).
        """
        self.service_def = service_def
        self.stack = stack
        self.volumes = volumes
        self.settings = settings or OrchestratorSettings()
        self.scoped_name = stack.scoped_name(service_def.name)
        self.container_dir = self.settings.state_path(stack.base_dir, "containers",
                                                      self.scoped_name)
        self.root = os.path.join(self.container_dir, "rootfs")
        self.log_path = self.settings.state_path(stack.base_dir, "logs",
                                                 f"{service_def.name}.log")
        self.runner = ProcessRunner(service_def.name, log_file=self.log_path)
        self.image: Optional[ContainerImage] = None
        self.environment: Dict[str, str] = {}
        self.command: List[str] = []
        self.mounts: List[MountedPath] = []

    # Preparation

    def prepare_root(self, image: ContainerImage) -> None:
        """Copies the image filesystem into the service's own layer, once per image."""
        marker = os.path.join(self.container_dir, "image_id")
        if os.path.isdir(self.root) and os.path.exists(marker):
            with open(marker) as f:
                if f.read().strip() == image.image_id:
                    return
        if os.path.isdir(self.root):
            shutil.rmtree(self.root)
        os.makedirs(self.container_dir, exist_ok=True)
        if os.path.isdir(image.rootfs):
            shutil.copytree(image.rootfs, self.root, symlinks=True)
        else:
            os.makedirs(self.root)
        with open(marker, "w") as f:
            f.write(image.image_id)
        logger.debug("[%s] Prepared root filesystem from %s", self.service_def.name,
                     image.reference)

    def mount_volumes(self, volume_names: Dict[str, str]) -> List[MountedPath]:
        """
        Links every declared mount into the service root.

        :param volume_names: Declared volume name -> provisioned name.
        """
        mounts = []
        for mount in self.service_def.volumes:
            source = self.volumes.resolve_source(
                mount, volume_names.get(mount.source) if mount.source else None,
                self.scoped_name)
            mounts.append((mount, source))
        self.mounts = self.volumes.prepare_mounts(
            self.service_def.name, self.root, mounts, self.working_dir_in_image)
        return self.mounts

    @property
    def working_dir_in_image(self) -> str:
        working_dir = self.service_def.working_dir
        if not working_dir and self.image is not None:
            working_dir = self.image.working_dir
        return working_dir or "/"

    @property
    def working_dir(self) -> str:
        return VolumeManager.resolve_target(self.root, self.working_dir_in_image)

    def in_root(self, path: str) -> str:
        return VolumeManager.resolve_target(self.root, path, self.working_dir_in_image)

    def build_environment(self, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges, lowest precedence first: host basics, image ENV, the
        service's own environment, then ``extra_env`` (discovery).
        """
        env = {k: os.environ[k] for k in HOST_PASSTHROUGH if k in os.environ}
        host_path = env.get("PATH", os.defpath)
        if self.image is not None:
            for key, value in self.image.env.items():
                if key == "PATH":
                    rooted = [self.in_root(p) for p in value.split(os.pathsep) if p]
                    value = os.pathsep.join(
                        [p for p in rooted if os.path.isdir(p)] + [host_path])
                env[key] = value
        env.update(self.service_def.environment)
        if extra_env:
            env.update(extra_env)
        env["HOSTNAME"] = self.service_def.hostname or self.service_def.name
        return env

    def build_command(self) -> List[str]:
        """
        Combines entrypoint and command the way container engines do: an
        entrypoint set on the service discards the image's CMD, and the
        command, when given, replaces the image's CMD.
        """
        image = self.image
        if self.service_def.entrypoint:
            entrypoint = list(self.service_def.entrypoint)
            cmd = list(self.service_def.command)
        else:
            entrypoint = list(image.entrypoint) if image else []
            cmd = list(self.service_def.command or (image.cmd if image else []))
        command = entrypoint + cmd
        if not command:
            return []

        executable = command[0]
        if os.path.isabs(executable) or os.sep in executable:
            candidate = self.in_root(executable)
            if os.path.exists(candidate):
                command[0] = candidate
        return command

    # Lifecycle

    def start(self, image: ContainerImage, volume_names: Dict[str, str],
              extra_env: Optional[Dict[str, str]] = None,
              hosts_content: Optional[str] = None) -> int:
        """
        Prepares the service root, mounts and environment, then starts the process.

        :param image: The resolved image to run.
        :param volume_names: Declared volume name -> provisioned name.
        :param extra_env: Additional environment variables (e.g., service discovery).
        :param hosts_content: Hosts file listing the names this service may resolve.
        :return: The pid of the started process.
        :raises MountError: If a mount cannot be made.
        :raises ProcessStartError: If there is nothing to run or it cannot be started.
        """
        self.image = image
        self.prepare_root(image)
        self.mount_volumes(volume_names)

        extra = dict(extra_env or {})
        if hosts_content is not None:
            hosts_path = os.path.join(self.container_dir, "hosts")
            with open(hosts_path, "w") as f:
                f.write(hosts_content)
            extra["STACKUP_HOSTS_FILE"] = hosts_path
        extra["STACKUP_ROOTFS"] = self.root
        self.environment = self.build_environment(extra)

        self.command = self.build_command()
        if not self.command:
            raise ProcessStartError("no command specified by the service or its image",
                                    self.service_def.name)
        try:
            self.runner.start(self.command, env=self.environment, working_dir=self.working_dir)
        except OSError as e:
            raise ProcessStartError(f"cannot execute '{self.command[0]}': {e}",
                                    self.service_def.name) from e
        return self.runner.pid

    def restart(self) -> int:
        """Starts the same command again in the already prepared root."""
        self.stop()
        try:
            self.runner.start(self.command, env=self.environment, working_dir=self.working_dir)
        except OSError as e:
            raise ProcessStartError(f"cannot execute '{self.command[0]}': {e}",
                                    self.service_def.name) from e
        return self.runner.pid

    def stop(self, timeout: Optional[float] = None):
        """
        Stops the service process.
        """
        self.runner.stop(timeout if timeout is not None else self.settings.stop_timeout)

    def remove(self) -> None:
        """Deletes the service's own layer."""
        if os.path.isdir(self.container_dir):
            shutil.rmtree(self.container_dir)

    def status(self) -> str:
        """
        Gets the current status of the service.

        :return: Status string (e.g., 'running', 'stopped', 'exited(0)').
        """
        if self.runner.is_running():
            return "running"
        exit_code = self.runner.get_exit_code()
        if exit_code is None:
            return "stopped"
        return f"exited({exit_code})"
