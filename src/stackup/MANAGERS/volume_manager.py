"""
Volume management: named volumes on disk and mounting them into service roots.
"""
import hashlib
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from ..errors import (
    HostPathMissingError,
    MountTypeMismatchError,
    ProvisioningError,
)
from ..MODELS.service_definition import MountType, VolumeMount
from ..MODELS.stack import VolumeDefinition

logger = logging.getLogger(__name__)


@dataclass
class VolumeInfo:
    name: str
    driver: str
    path: str
    created: str
    project: Optional[str] = None


@dataclass
class MountedPath:
    source: str
    target: str
    read_only: bool


class VolumeManager:
    """
    Manages named volumes under ``<state_dir>/volumes/<name>/_data`` and
    realises mounts as symlinks inside a service's root directory.

    Volumes are only ever deleted by ``remove_volume``; restarting or
    rebuilding a service leaves them untouched.
    """
    def __init__(self, state_dir: str, base_dir: str = "."):
        """
        Initializes the volume manager.

        :param state_dir: Root directory for internal volume storage.
        :param base_dir: The base directory for resolving relative bind sources.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.join(state_dir, "volumes")
        self.anonymous_root = os.path.join(state_dir, "anonymous")
        os.makedirs(self.volumes_root, exist_ok=True)
        self._lock = threading.RLock()

    # Named volumes

    def _volume_dir(self, name: str) -> str:
        return os.path.join(self.volumes_root, name)

    def _meta_path(self, name: str) -> str:
        return os.path.join(self._volume_dir(name), "meta.json")

    def data_path(self, name: str) -> str:
        return os.path.join(self._volume_dir(name), "_data")

    def get_volume(self, name: str) -> Optional[VolumeInfo]:
        meta = self._meta_path(name)
        if not os.path.isfile(meta):
            return None
        with open(meta, "r") as f:
            data = json.load(f)
        return VolumeInfo(path=self.data_path(name), **data)

    def list_volumes(self) -> List[VolumeInfo]:
        volumes = []
        for entry in sorted(os.listdir(self.volumes_root)):
            info = self.get_volume(entry)
            if info:
                volumes.append(info)
        return volumes

    def ensure_volume(self,
                      definition: VolumeDefinition,
                      name: str,
                      project: Optional[str] = None) -> Tuple[VolumeInfo, bool]:
        """
        Creates the volume if absent, reuses it if a compatible one exists.

        :return: The volume and whether it was created now.
        :raises ProvisioningError: On a collision with an incompatible resource.
        """
        with self._lock:
            volume_dir = self._volume_dir(name)
            if os.path.lexists(volume_dir) and not os.path.isdir(volume_dir):
                raise ProvisioningError(
                    "volume", name, f"{volume_dir} exists and is not a directory")

            existing = self.get_volume(name)
            if existing is not None:
                if existing.driver != definition.driver:
                    raise ProvisioningError(
                        "volume", name,
                        f"exists with driver '{existing.driver}', "
                        f"stack declares '{definition.driver}'")
                if not os.path.isdir(existing.path):
                    raise ProvisioningError(
                        "volume", name, f"data directory {existing.path} is missing")
                logger.debug("Reusing volume %s", name)
                return existing, False

            if definition.external:
                raise ProvisioningError("volume", name, "declared external but does not exist")
            if os.path.isdir(volume_dir) and os.listdir(volume_dir):
                raise ProvisioningError(
                    "volume", name, f"{volume_dir} holds data not managed as a volume")

            os.makedirs(self.data_path(name), exist_ok=True)
            info = {
                "name": name,
                "driver": definition.driver,
                "created": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "project": project,
            }
            with open(self._meta_path(name), "w") as f:
                json.dump(info, f, indent=2)
            logger.info("Created volume %s", name)
            return VolumeInfo(path=self.data_path(name), **info), True

    def remove_volume(self, name: str) -> bool:
        with self._lock:
            volume_dir = self._volume_dir(name)
            if not os.path.isdir(volume_dir):
                return False
            shutil.rmtree(volume_dir)
            logger.info("Removed volume %s", name)
            return True

    def remove_anonymous(self, owner: str) -> None:
        path = os.path.join(self.anonymous_root, owner)
        if os.path.isdir(path):
            shutil.rmtree(path)

    # Mounts

    def resolve_source(self, mount: VolumeMount, volume_name: Optional[str], owner: str) -> str:
        """
        Resolves the host side of a mount.

        :param mount: The declared mount.
        :param volume_name: Provisioned name of the named volume, if any.
        :param owner: Scoped service name, owner of anonymous volumes.
        """
        if mount.type == MountType.BIND:
            return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(mount.source)))
        if volume_name:
            return self.data_path(volume_name)
        digest = hashlib.sha256(mount.target.encode()).hexdigest()[:12]
        return os.path.join(self.anonymous_root, owner, digest)

    @staticmethod
    def resolve_target(root: str, target: str, working_dir: Optional[str] = None) -> str:
        """
        Resolves the path of a mount target inside a service root directory.

        :param root: The service's root filesystem on the host.
        :param target: The path inside the service.
        :param working_dir: The service working directory, for relative targets.
        """
        if not target.startswith("/"):
            target = os.path.join(working_dir or "/", target)
        target = os.path.normpath(target).lstrip("/")
        return os.path.join(root, target)

    def prepare_mounts(self,
                       service: str,
                       root: str,
                       mounts: List[Tuple[VolumeMount, str]],
                       working_dir: Optional[str] = None) -> List[MountedPath]:
        """
        Mounts each (mount, host source) pair into ``root``.

        Each host source is validated before anything is linked: a bind source
        must exist, and the destination inside the service root must not be a
        file when a directory is mounted (or a directory when a file is).

        :raises HostPathMissingError: If a bind source does not exist.
        :raises MountTypeMismatchError: If the destination has the wrong type.
        """
        planned = []
        for mount, source in mounts:
            target = self.resolve_target(root, mount.target, working_dir)
            if mount.type == MountType.BIND and not os.path.exists(source):
                raise HostPathMissingError(service, source, mount.target)
            if mount.type != MountType.BIND:
                os.makedirs(source, exist_ok=True)
            self._check_destination(service, source, target, mount.target)
            planned.append((mount, source, target))

        mounted = []
        for mount, source, target in planned:
            self._link(source, target, seed=mount.type != MountType.BIND)
            logger.debug("[%s] Mounted %s -> %s%s", service, source, mount.target,
                         " (ro)" if mount.read_only else "")
            mounted.append(MountedPath(source=source, target=mount.target,
                                       read_only=mount.read_only))
        return mounted

    def _check_destination(self, service: str, source: str, target: str, declared: str) -> None:
        parent = os.path.dirname(target)
        while parent and not os.path.lexists(parent):
            parent = os.path.dirname(parent)
        if parent and not os.path.isdir(parent):
            raise MountTypeMismatchError(
                service, source, declared,
                f"mount destination is not a directory: {parent} is a file in the image")
        if os.path.islink(target):
            # Left over from a previous start of the same service.
            return
        if not os.path.exists(target):
            return
        if os.path.isdir(source) and not os.path.isdir(target):
            raise MountTypeMismatchError(
                service, source, declared,
                "mount destination is not a directory: the image has a file at this path; "
                "mount a file onto it or choose another destination")
        if not os.path.isdir(source) and os.path.isdir(target):
            raise MountTypeMismatchError(
                service, source, declared,
                "cannot mount a file onto a directory in the image")

    @staticmethod
    def _link(source: str, target: str, seed: bool = False) -> None:
        if os.path.islink(target):
            if os.path.realpath(target) == os.path.realpath(source):
                return
            os.unlink(target)
        elif os.path.isdir(target):
            # Seed an empty named volume with the image's content, then
            # replace the directory in the service's own layer.
            if seed and os.path.isdir(source) and not os.listdir(source):
                shutil.copytree(target, source, symlinks=True, dirs_exist_ok=True)
            shutil.rmtree(target)
        elif os.path.exists(target):
            os.remove(target)

        parent = os.path.dirname(target)
        if parent:
            os.makedirs(parent, exist_ok=True)
        os.symlink(source, target, target_is_directory=os.path.isdir(source))
