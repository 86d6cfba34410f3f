"""Variable key convention and template resolution.

Values a node produces are published under ``#<node_id>.<name>#`` so any
downstream node can address a specific producer's output. All construction
and parsing of those keys goes through this module.

Two reference syntaxes are supported:
- ``{{key}}`` placeholders inside strings (End/Answer/LLM prompts). Unresolved
  placeholders are left verbatim.
- A bare ``$name`` string, used by Variable assignments to copy a value.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

from flowengine.core.errors import ValidationError

_NODE_KEY_PATTERN = re.compile(r"^#([^#.]+)\.([^#]+)#$")
_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_WHOLE_PLACEHOLDER_PATTERN = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")


def node_key(node_id: str, name: str) -> str:
    """Build the namespaced key for a node-produced variable."""
    return f"#{node_id}.{name}#"


def parse_node_key(key: str) -> tuple[str, str] | None:
    """Split ``#node.name#`` into (node_id, name); None for plain keys."""
    match = _NODE_KEY_PATTERN.match(key)
    if not match:
        return None
    return match.group(1), match.group(2)


def parse_selector(selector: Any, field_name: str = "selector") -> tuple[str, str]:
    """Validate a ``[node_id, variable_name]`` selector pair."""
    if not isinstance(selector, (list, tuple)) or len(selector) != 2:
        raise ValidationError(
            f"{field_name} must have exactly 2 elements [node_id, variable_name]"
        )
    node_id, name = selector
    if not isinstance(node_id, str):
        raise ValidationError(f"{field_name}[0] must be a string")
    if not isinstance(name, str):
        raise ValidationError(f"{field_name}[1] must be a string")
    return node_id, name


def selector_key(selector: Any, field_name: str = "selector") -> str:
    return node_key(*parse_selector(selector, field_name))


def stringify(value: Any) -> str:
    """Render a value for insertion into a template string."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def resolve_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders with values from ``variables``."""

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return stringify(variables[key])

    return _PLACEHOLDER_PATTERN.sub(_substitute, template)


def resolve_reference(value: Any, variables: Mapping[str, Any]) -> Any:
    """Resolve a Variable-node assignment value.

    ``"$name"`` and ``"{{name}}"`` copy the referenced value with its type;
    other strings have embedded placeholders resolved. An unresolved whole
    reference is returned unchanged.
    """
    if not isinstance(value, str):
        return value

    if value.startswith("$") and len(value) > 1:
        name = value[1:]
        return variables[name] if name in variables else value

    whole = _WHOLE_PLACEHOLDER_PATTERN.match(value)
    if whole:
        name = whole.group(1)
        return variables[name] if name in variables else value

    return resolve_template(value, variables)


def resolve_parameters(params: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively resolve whole-string ``{{var}}`` leaves in a JSON structure."""
    if isinstance(params, dict):
        return {key: resolve_parameters(value, variables) for key, value in params.items()}
    if isinstance(params, list):
        return [resolve_parameters(value, variables) for value in params]
    if isinstance(params, str):
        whole = _WHOLE_PLACEHOLDER_PATTERN.match(params)
        if whole and whole.group(1) in variables:
            return variables[whole.group(1)]
    return params
