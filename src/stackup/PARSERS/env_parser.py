"""
Parsers for .env files, supporting quotes and comments.
"""
import io
import logging
import os
from collections.abc import Mapping
from typing import Dict, Iterator, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


class EnvironmentSource(Mapping):
    """
    Immutable, ordered KEY -> VALUE mapping loaded once per invocation.
    """

    def __init__(self, values: Optional[Mapping] = None, origin: Optional[str] = None):
        self._values: Dict[str, str] = dict(values or {})
        self.origin = origin

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EnvironmentSource({len(self)} keys, origin={self.origin!r})"

    def to_dict(self) -> Dict[str, str]:
        return dict(self._values)


class EnvParser:
    """
    Parser for .env files.
    """
    @staticmethod
    def parse(env_path: str) -> EnvironmentSource:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            EnvironmentSource: The loaded variables.
        """
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content, origin=env_path)

    @staticmethod
    def parse_from_string(content: str, origin: Optional[str] = None) -> EnvironmentSource:
        """
        Parses environment variables from a string.
        Handles quotes, comments, ``export`` prefixes and escaped characters.
        Later declarations of the same key win; keys without a value are skipped.
        """
        raw = dotenv_values(stream=io.StringIO(content), interpolate=False)
        values = {}
        for key, value in raw.items():
            if value is None:
                logger.debug("Ignoring %s: declared without a value", key)
                continue
            values[key] = value
        return EnvironmentSource(values, origin=origin)

    @staticmethod
    def load_optional(env_path: str) -> EnvironmentSource:
        """Loads ``env_path`` if it exists, otherwise returns an empty source."""
        if not os.path.exists(env_path):
            logger.debug("No environment file at %s", env_path)
            return EnvironmentSource(origin=env_path)
        return EnvParser.parse(env_path)
