"""
Atomic claims on the ports service processes bind for the duration of a run.
"""
import logging
import threading
from typing import Dict, List, Tuple

from ..errors import PortInUseError
from ..MODELS.service_definition import PortMapping
from ..UTILS.port_finder import is_port_free, port_holder

logger = logging.getLogger(__name__)


class PortRegistry:
    """
    Tracks which service holds which port.

    Service processes run natively and listen on their container port, so
    that is the port claimed and checked, published or not. Claims for one
    service are all-or-nothing and made under a lock, so two services racing
    for the same port cannot both get it; ports held by processes outside
    the stack are detected when claimed.
    """

    def __init__(self):
        self._claims: Dict[Tuple[int, str], str] = {}
        self._lock = threading.Lock()

    def claim(self, service: str, mappings: List[PortMapping]) -> Dict[int, int]:
        """
        Claims the ports ``service`` listens on.

        :return: Mapping from container port to published host port.
        :raises PortInUseError: If any port is held by another service or process.
        """
        with self._lock:
            for m in mappings:
                holder = self._claims.get((m.container, m.protocol))
                if holder is not None and holder != service:
                    raise PortInUseError(service, m.container, holder)
                if holder is None and not is_port_free(m.container, m.protocol,
                                                       m.host_ip or ''):
                    raise PortInUseError(service, m.container,
                                         process=port_holder(m.container))
            for m in mappings:
                self._claims[(m.container, m.protocol)] = service
        published = [m for m in mappings if m.host is not None]
        for m in published:
            if m.host != m.container:
                logger.warning("[%s] Publishing %d as %d is not applied; the process "
                               "is reachable on %d", service, m.container, m.host, m.container)
        return {m.container: m.host for m in published}

    def release(self, service: str) -> None:
        with self._lock:
            for key in [k for k, v in self._claims.items() if v == service]:
                del self._claims[key]

    def holder(self, port: int, protocol: str = "tcp"):
        return self._claims.get((port, protocol))
