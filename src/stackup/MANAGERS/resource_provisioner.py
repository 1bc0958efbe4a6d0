"""
Provisioning of the networks and volumes a stack references.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import ProvisioningError
from ..MODELS.service_definition import MountType
from ..MODELS.stack import Stack
from .network_manager import NetworkManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningReport:
    """Outcome of provisioning, keyed ``network:<name>`` / ``volume:<name>``."""

    created: List[str] = field(default_factory=list)
    reused: List[str] = field(default_factory=list)
    failed: Dict[str, ProvisioningError] = field(default_factory=dict)


class ResourceProvisioner:
    """
    Ensures every network and volume referenced by a stack exists before any
    service that references it is launched.

    Provisioning runs under one lock, so concurrent callers never race to
    create the same resource, and it is idempotent: a second run reports
    everything as reused.
    """

    def __init__(self, networks: NetworkManager, volumes: VolumeManager):
        self.networks = networks
        self.volumes = volumes
        self._lock = threading.Lock()

    @staticmethod
    def network_name(stack: Stack, name: str) -> str:
        definition = stack.networks[name]
        return name if definition.external else stack.scoped_name(name)

    @staticmethod
    def volume_name(stack: Stack, name: str) -> str:
        definition = stack.volumes[name]
        return name if definition.external else stack.scoped_name(name)

    def referenced_networks(self, stack: Stack) -> List[str]:
        seen: List[str] = []
        for svc in stack.services.values():
            for network in svc.networks:
                if network not in seen:
                    seen.append(network)
        return seen

    def referenced_volumes(self, stack: Stack) -> List[str]:
        seen: List[str] = []
        for svc in stack.services.values():
            for mount in svc.volumes:
                if mount.type == MountType.VOLUME and mount.source and mount.source not in seen:
                    seen.append(mount.source)
        return seen

    def provision(self, stack: Stack) -> ProvisioningReport:
        """
        Creates or reuses all referenced networks and volumes.

        A failure is recorded per resource and does not stop the others.
        """
        report = ProvisioningReport()
        with self._lock:
            for name in self.referenced_networks(stack):
                key = f"network:{name}"
                try:
                    _, created = self.networks.ensure_network(
                        stack.networks[name], self.network_name(stack, name), stack.project)
                except ProvisioningError as e:
                    logger.error("Could not provision %s: %s", key, e)
                    report.failed[key] = e
                    continue
                (report.created if created else report.reused).append(key)

            for name in self.referenced_volumes(stack):
                key = f"volume:{name}"
                try:
                    _, created = self.volumes.ensure_volume(
                        stack.volumes[name], self.volume_name(stack, name), stack.project)
                except ProvisioningError as e:
                    logger.error("Could not provision %s: %s", key, e)
                    report.failed[key] = e
                    continue
                (report.created if created else report.reused).append(key)

        logger.info("Provisioned resources: %d created, %d reused, %d failed",
                    len(report.created), len(report.reused), len(report.failed))
        return report

    def blocked_services(self, stack: Stack, report: ProvisioningReport) -> Dict[str, ProvisioningError]:
        """Services that reference a resource which failed to provision."""
        blocked: Dict[str, ProvisioningError] = {}
        for name, svc in stack.services.items():
            keys = [f"network:{n}" for n in svc.networks]
            keys += [f"volume:{m.source}" for m in svc.volumes
                     if m.type == MountType.VOLUME and m.source]
            for key in keys:
                if key in report.failed:
                    blocked[name] = report.failed[key]
                    break
        return blocked

    def teardown(self, stack: Stack, remove_volumes: bool = False,
                 services: Optional[List[str]] = None) -> List[str]:
        """
        Removes the stack's own networks and, only when asked, its volumes.
        External resources are never removed.

        :return: Keys of the removed resources.
        """
        removed = []
        with self._lock:
            for name in self.referenced_networks(stack):
                if stack.networks[name].external:
                    continue
                if self.networks.remove_network(self.network_name(stack, name)):
                    removed.append(f"network:{name}")
            if remove_volumes:
                for name in self.referenced_volumes(stack):
                    if stack.volumes[name].external:
                        continue
                    if self.volumes.remove_volume(self.volume_name(stack, name)):
                        removed.append(f"volume:{name}")
                for service in services or list(stack.services):
                    self.volumes.remove_anonymous(stack.scoped_name(service))
        return removed
