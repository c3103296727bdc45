"""Resolution of ``${...}`` placeholders in configuration strings.

Three token forms are recognised, in priority order:

1. ``${appproperties.<key>}``: static tenant property; a missing key yields an
   empty string and a warning.
2. ``${<mapName>[<keyVarName>]}``: index into a map-valued variable. The key is
   the value of the variable ``keyVarName`` or, when that variable is unset,
   the literal ``keyVarName``. A missing entry yields an empty string; when the
   variable is not a map the token is left unresolved.
3. Anything else, optionally prefixed ``processVariable.``: the variable's
   value, or the unresolved ``${token}`` when the variable is unset.

Resolution is a single left-to-right pass; substituted values are never
re-scanned for further tokens.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")
PROPERTY_PREFIX = "appproperties."
VARIABLE_PREFIX = "processVariable."


def stringify(value: Any) -> str:
    """Render a variable value the way it is embedded into strings."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class PlaceholderResolver:
    """Stateless resolver over a variable source and a property source."""

    def resolve(
        self,
        template: str | None,
        variables: Mapping[str, Any],
        properties: Mapping[str, str] | None = None,
    ) -> str | None:
        if template is None:
            return None

        def _replace(match: re.Match[str]) -> str:
            return self._resolve_token(match.group(1).strip(), variables, properties)

        return PLACEHOLDER_PATTERN.sub(_replace, template)

    def resolve_structure(
        self,
        value: Any,
        variables: Mapping[str, Any],
        properties: Mapping[str, str] | None = None,
    ) -> Any:
        """Resolve every string nested inside lists and maps."""
        if isinstance(value, str):
            return self.resolve(value, variables, properties)
        if isinstance(value, list):
            return [self.resolve_structure(item, variables, properties) for item in value]
        if isinstance(value, dict):
            return {
                key: self.resolve_structure(item, variables, properties)
                for key, item in value.items()
            }
        return value

    def _resolve_token(
        self,
        token: str,
        variables: Mapping[str, Any],
        properties: Mapping[str, str] | None,
    ) -> str:
        if token.startswith(PROPERTY_PREFIX) and properties is not None:
            key = token[len(PROPERTY_PREFIX):]
            value = properties.get(key)
            if value is None:
                logger.warning("placeholder.property.missing", key=key)
                return ""
            return value
        if "[" in token and token.endswith("]"):
            return self._resolve_map_token(token, variables)
        name = token[len(VARIABLE_PREFIX):] if token.startswith(VARIABLE_PREFIX) else token
        value = variables.get(name)
        if value is None:
            logger.debug("placeholder.variable.unresolved", token=token)
            return "${" + token + "}"
        return stringify(value)

    def _resolve_map_token(self, token: str, variables: Mapping[str, Any]) -> str:
        bracket = token.index("[")
        map_name = token[:bracket]
        key_var_name = token[bracket + 1 : -1]
        mapping = variables.get(map_name)
        key_value = variables.get(key_var_name)
        resolved_key = stringify(key_value) if key_value is not None else key_var_name
        if not isinstance(mapping, Mapping):
            logger.debug("placeholder.map.unresolved", token=token, map_name=map_name)
            return "${" + token + "}"
        value = mapping.get(resolved_key)
        if value is None:
            logger.warning("placeholder.map.key_missing", map_name=map_name, key=resolved_key)
            return ""
        return stringify(value)


def resolve(
    template: str | None,
    variables: Mapping[str, Any],
    properties: Mapping[str, str] | None = None,
) -> str | None:
    """Module level shortcut for :meth:`PlaceholderResolver.resolve`."""
    return _DEFAULT_RESOLVER.resolve(template, variables, properties)


_DEFAULT_RESOLVER = PlaceholderResolver()


__all__ = ["PLACEHOLDER_PATTERN", "PlaceholderResolver", "resolve", "stringify"]
