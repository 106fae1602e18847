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
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict, List

logger = logging.getLogger(__name__)


class InterpolationError(KeyError):
    """Raised for ``${VAR:?message}`` / ``${VAR?message}`` when VAR is missing."""

    def __str__(self) -> str:
        return self.args[0] if self.args else ""


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?error}, ${VAR?error} and $$ as a literal dollar.
    """
    # Group 1: $$ escape
    # Group 2: braced name, 3: operator, 4: operand
    # Group 5: bare name
    pattern = re.compile(
        r'\$(?:(\$)'
        r'|\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}'
        r'|([A-Za-z_][A-Za-z0-9_]*))'
    )

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        Unset variables without a modifier resolve to an empty string and
        are logged, as compose does.

        :param template: The string containing placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises InterpolationError: If a required variable is missing.
        """
        missing: List[str] = []

        def replace(match: "re.Match[str]") -> str:
            if match.group(1):
                return '$'
            var_name = match.group(2) or match.group(5)
            operator = match.group(3)
            operand = match.group(4) or ''
            value = context.get(var_name)

            # The colon forms treat an empty value like an unset one
            is_set = bool(value) if operator and operator.startswith(':') else value is not None

            if operator in (':-', '-'):
                return value if is_set else operand
            if operator in (':+', '+'):
                return operand if is_set else ''
            if operator in (':?', '?'):
                if not is_set:
                    raise InterpolationError(
                        f"Required variable {var_name} is missing: {operand or 'no value'}"
                    )
                return value

            if value is None:
                missing.append(var_name)
                return ''
            return value

        result = cls.pattern.sub(replace, template)
        for var_name in sorted(set(missing)):
            logger.warning("The %s variable is not set. Defaulting to a blank string.", var_name)
        return result
