"""
Service discovery: which names a service can resolve, and how it reaches them.
"""
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import HostnameUnresolvableError, ServiceConnectionError
from ..MODELS.stack import Stack
from .network_manager import LOOPBACK, Endpoint, NetworkManager
from .resource_provisioner import ResourceProvisioner

logger = logging.getLogger(__name__)

LOCAL_NAMES = ("localhost", "127.0.0.1", "::1")


def env_prefix(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


@dataclass
class NetworkContext:
    """What a process inside a service gets to find its peers."""

    service: str
    networks: List[str]
    environment: Dict[str, str] = field(default_factory=dict)
    hosts: str = ""


class ServiceDiscovery:
    """
    Resolves service names within the networks a caller is attached to.

    A name resolves only for a caller that shares a network with the target;
    callers outside every network (the host) resolve nothing. Resolution uses
    live network memberships, while the environment and hosts file handed to
    a starting service list every declared peer on its networks.
    """

    def __init__(self, stack: Stack, networks: NetworkManager):
        self.stack = stack
        self.networks = networks

    def _network_names(self, service: str) -> Dict[str, str]:
        return {n: ResourceProvisioner.network_name(self.stack, n)
                for n in self.stack.networks_of(service)}

    def declared_peers(self, service: str) -> Dict[str, Dict[str, Endpoint]]:
        """Provisioned network name -> endpoints of every declared member."""
        peers: Dict[str, Dict[str, Endpoint]] = {}
        for declared, provisioned in self._network_names(service).items():
            peers[provisioned] = {
                name: Endpoint(service=name, aliases=svc.aliases)
                for name, svc in self.stack.services.items()
                if declared in svc.networks
            }
        return peers

    def live_peers(self, service: str) -> Dict[str, Dict[str, Endpoint]]:
        """Provisioned network name -> endpoints currently attached."""
        peers = {}
        for provisioned in self._network_names(service).values():
            members = self.networks.members(provisioned)
            if service in members:
                peers[provisioned] = members
        return peers

    def resolve(self, hostname: str, caller: Optional[str] = None) -> str:
        """
        Resolves ``hostname`` as seen from service ``caller`` (None for the host).

        :raises HostnameUnresolvableError: If no network shared with the
            caller has a member answering to that name.
        """
        if hostname in LOCAL_NAMES:
            return LOOPBACK
        if caller is not None and caller in self.stack.services:
            for endpoints in self.live_peers(caller).values():
                for endpoint in endpoints.values():
                    if hostname in endpoint.aliases:
                        return endpoint.address
        raise HostnameUnresolvableError(hostname, caller)

    def connect(self, hostname: str, port: int, caller: Optional[str] = None,
                timeout: float = 5.0) -> socket.socket:
        """
        Opens a TCP connection to ``hostname:port`` from ``caller``.

        :raises HostnameUnresolvableError: If the name is not visible to the caller.
        :raises ServiceConnectionError: If the name resolved but the connection failed.
        """
        address = self.resolve(hostname, caller)
        try:
            return socket.create_connection((address, port), timeout=timeout)
        except OSError as e:
            raise ServiceConnectionError(hostname, port, caller, e.strerror or str(e)) from e

    def discovery_env(self, service: str) -> Dict[str, str]:
        """
        ``<PEER>_HOST`` and ``<PEER>_PORT`` for every peer on a shared network.
        """
        env = {}
        for endpoints in self.declared_peers(service).values():
            for name, endpoint in endpoints.items():
                if name == service:
                    continue
                ports = self.stack.services[name].ports
                for alias in endpoint.aliases:
                    prefix = env_prefix(alias)
                    env[f"{prefix}_HOST"] = endpoint.address
                    if ports:
                        env[f"{prefix}_PORT"] = str(ports[0].container)
        return env

    def network_context(self, service: str) -> NetworkContext:
        peers = self.declared_peers(service)
        environment = self.discovery_env(service)
        environment["STACKUP_SERVICE"] = service
        environment["STACKUP_NETWORKS"] = ",".join(sorted(peers))
        return NetworkContext(
            service=service,
            networks=sorted(peers),
            environment=environment,
            hosts=self.networks.generate_hosts_file_content(peers),
        )
