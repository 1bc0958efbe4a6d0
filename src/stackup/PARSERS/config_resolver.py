"""
Substitution of environment placeholders into a raw stack descriptor.
"""
import logging
from typing import Any, Dict, Optional

from ..UTILS.string_interpolation import EnvironmentInterpolator
from .env_parser import EnvironmentSource

logger = logging.getLogger(__name__)


class ConfigurationResolver:
    """
    Produces a fully substituted copy of a raw descriptor.

    Placeholders may appear in any string value (and mapping key) of the
    descriptor. The first unresolved placeholder aborts resolution with a
    MissingKeyError naming the key and the service that contains it.
    """

    def __init__(self, env_source: EnvironmentSource):
        self.env_source = env_source

    def resolve(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        resolved: Dict[str, Any] = {}
        for section, value in raw.items():
            if section == 'services' and isinstance(value, dict):
                resolved[section] = {
                    name: self._walk(spec, service=str(name))
                    for name, spec in value.items()
                }
            else:
                resolved[section] = self._walk(value, service=None)
        logger.debug("Resolved descriptor against %d environment keys", len(self.env_source))
        return resolved

    def _walk(self, value: Any, service: Optional[str]) -> Any:
        if isinstance(value, str):
            return EnvironmentInterpolator.interpolate(value, self.env_source, service)
        if isinstance(value, dict):
            return {
                self._walk(k, service) if isinstance(k, str) else k: self._walk(v, service)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self._walk(item, service) for item in value]
        return value
