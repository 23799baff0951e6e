"""Template interpolation against workflow context."""

import json
import re
from typing import Any, Dict

_TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def stringify(value: Any) -> str:
    """Render a context value for insertion into a template."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def interpolate(value: Any, context: Dict[str, Any]) -> Any:
    """Replace ``{{key}}`` tokens in a string with context values.

    Non-string values are returned unchanged. Tokens whose key is not in the
    context are left as they are. No expressions are evaluated.
    """
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in context:
            return stringify(context[key])
        return match.group(0)

    return _TOKEN_PATTERN.sub(_replace, value)


def get_nested_value(obj: Any, path: str) -> Any:
    """Follow a dot-separated path through nested dicts; None if any segment is missing."""
    current = obj
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            return None
    return current
