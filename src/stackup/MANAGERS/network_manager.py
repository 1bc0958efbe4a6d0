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
Network management: named isolation domains and their members.

Networks are persisted as JSON records so that a later invocation (``exec``,
``down``) sees the same networks and memberships. With the local process
engine every member is reachable on the loopback address; what a network
controls is which service names a member may resolve.
"""
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from jinja2 import Template

from ..errors import ProvisioningError
from ..MODELS.stack import NetworkDefinition

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"

HOSTS_TEMPLATE = Template(
    "127.0.0.1\tlocalhost\n"
    "::1\tlocalhost ip6-localhost ip6-loopback\n"
    "{% for entry in entries %}"
    "{{ entry.address }}\t{{ entry.names | join(' ') }}\t# {{ entry.networks | join(',') }}\n"
    "{% endfor %}"
)


@dataclass
class Endpoint:
    """A service's membership in one network."""

    service: str
    aliases: List[str]
    address: str = LOOPBACK


@dataclass
class NetworkRecord:
    name: str
    driver: str
    internal: bool = False
    project: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    endpoints: Dict[str, Endpoint] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> "NetworkRecord":
        endpoints = {k: Endpoint(**v) for k, v in data.pop("endpoints", {}).items()}
        return cls(endpoints=endpoints, **data)


class NetworkManager:
    """
    Creates, reuses and removes networks, and tracks which services are attached.
    """
    def __init__(self, state_dir: str):
        """
        Initializes the network manager.

        :param state_dir: Directory holding one JSON record per network.
        """
        self.networks_dir = os.path.join(state_dir, "networks")
        os.makedirs(self.networks_dir, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, name: str) -> str:
        return os.path.join(self.networks_dir, f"{name}.json")

    def get_network(self, name: str) -> Optional[NetworkRecord]:
        path = self._path(name)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r") as f:
                return NetworkRecord.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            raise ProvisioningError("network", name, f"unreadable network record: {e}") from e

    def list_networks(self) -> List[NetworkRecord]:
        records = []
        for entry in sorted(os.listdir(self.networks_dir)):
            if entry.endswith(".json"):
                record = self.get_network(entry[:-5])
                if record:
                    records.append(record)
        return records

    def _save(self, record: NetworkRecord) -> None:
        path = self._path(record.name)
        tmp = f"{path}.tmp"
        with open(tmp, "w") as f:
            json.dump(asdict(record), f, indent=2)
        os.replace(tmp, path)

    def ensure_network(self,
                       definition: NetworkDefinition,
                       name: str,
                       project: Optional[str] = None) -> Tuple[NetworkRecord, bool]:
        """
        Creates the network if absent, reuses it if a compatible one exists.

        :param definition: Declared network.
        :param name: Name the network is provisioned under.
        :param project: Owning project, recorded on creation.
        :return: The network record and whether it was created now.
        :raises ProvisioningError: If an incompatible network of that name exists,
            or an external network is missing.
        """
        with self._lock:
            existing = self.get_network(name)
            if existing is not None:
                if existing.driver != definition.driver:
                    raise ProvisioningError(
                        "network", name,
                        f"exists with driver '{existing.driver}', "
                        f"stack declares '{definition.driver}'")
                if existing.internal != definition.internal and not definition.external:
                    raise ProvisioningError(
                        "network", name, "exists with a different 'internal' setting")
                logger.debug("Reusing network %s (%s)", name, existing.id)
                return existing, False

            if definition.external:
                raise ProvisioningError(
                    "network", name, "declared external but does not exist")

            record = NetworkRecord(
                name=name,
                driver=definition.driver,
                internal=definition.internal,
                project=project,
            )
            self._save(record)
            logger.info("Created network %s (%s)", name, record.id)
            return record, True

    def remove_network(self, name: str) -> bool:
        with self._lock:
            path = self._path(name)
            if not os.path.exists(path):
                return False
            os.remove(path)
            logger.info("Removed network %s", name)
            return True

    def connect_service(self, network: str, service: str,
                        aliases: Optional[List[str]] = None) -> Endpoint:
        """
        Attaches a service to a network under its name and aliases.

        :return: The endpoint recorded for the service.
        """
        with self._lock:
            record = self.get_network(network)
            if record is None:
                raise ProvisioningError("network", network, "not provisioned")
            endpoint = Endpoint(service=service, aliases=list(aliases or [service]))
            record.endpoints[service] = endpoint
            self._save(record)
            logger.debug("Connected %s to network %s", service, network)
            return endpoint

    def disconnect_service(self, network: str, service: str) -> None:
        with self._lock:
            record = self.get_network(network)
            if record is None or service not in record.endpoints:
                return
            del record.endpoints[service]
            self._save(record)
            logger.debug("Disconnected %s from network %s", service, network)

    def members(self, network: str) -> Dict[str, Endpoint]:
        record = self.get_network(network)
        return dict(record.endpoints) if record else {}

    def generate_hosts_file_content(self, networks: Dict[str, Dict[str, Endpoint]]) -> str:
        """
        Renders an /etc/hosts style file listing every name visible from the
        given networks (network name -> its endpoints).
        """
        entries: Dict[str, Dict] = {}
        for network, endpoints in networks.items():
            for service, endpoint in sorted(endpoints.items()):
                entry = entries.setdefault(
                    service, {"address": endpoint.address, "names": [], "networks": []})
                for alias in endpoint.aliases:
                    if alias not in entry["names"]:
                        entry["names"].append(alias)
                entry["networks"].append(network)
        return HOSTS_TEMPLATE.render(entries=list(entries.values()))
