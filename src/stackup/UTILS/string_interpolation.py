"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Mapping, Optional

from ..errors import MissingKeyError


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR:?message} and $$ as an escaped dollar sign.

    Substitution happens in a single pass: text produced by a replacement
    is never scanned again.
    """
    # Group 1: escaped $$
    # Group 2: braced VAR name, 3: operator, 4: operand
    # Group 5: bare $VAR name
    PATTERN = re.compile(
        r'(\$\$)'
        r'|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}'
        r'|\$([A-Za-z_][A-Za-z0-9_]*)'
    )

    @classmethod
    def interpolate(cls,
                    template: str,
                    context: Mapping[str, str],
                    service: Optional[str] = None) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param service: Service the template belongs to, used in error messages.
        :return: The interpolated string.
        :raises MissingKeyError: If a variable is not found and no default is provided.
        """
        def replace(match):
            if match.group(1):
                return '$'

            var_name = match.group(2) or match.group(5)
            operator = match.group(3)
            operand = match.group(4) if match.group(4) is not None else ''

            value = context.get(var_name)
            is_set = value is not None
            is_non_empty = bool(value)

            if operator == ':-':
                return value if is_non_empty else operand
            if operator == '-':
                return value if is_set else operand
            if operator == ':+':
                return operand if is_non_empty else ''
            if operator == '+':
                return operand if is_set else ''
            if operator in (':?', '?'):
                ok = is_non_empty if operator == ':?' else is_set
                if not ok:
                    raise MissingKeyError(var_name, service, operand or None)
                return value

            if not is_set:
                raise MissingKeyError(var_name, service)
            return value

        return cls.PATTERN.sub(replace, template)

    @classmethod
    def references(cls, template: str):
        """Yields the variable names a template refers to."""
        for match in cls.PATTERN.finditer(template):
            name = match.group(2) or match.group(5)
            if name:
                yield name
