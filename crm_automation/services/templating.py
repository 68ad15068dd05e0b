import re
from typing import Any, Mapping

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def interpolate(template: str, entity: Mapping[str, Any]) -> str:
    """Replace `{{field}}` with the snapshot value; unknown names stay as written."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in entity:
            return match.group(0)
        return str(entity[key])

    return _PLACEHOLDER_RE.sub(_replace, template or "")
