"""``{{variable}}`` substitution over session variables."""

from __future__ import annotations

import re
from typing import Any, Mapping

PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def interpolate(template: str, variables: Mapping[str, Any]) -> str:
    """Replace each ``{{name}}`` with the string form of ``variables[name]``.

    Unknown names are left verbatim. Substitution is a single pass, so text
    inserted from a variable is never expanded again.
    """
    if not template or "{{" not in template:
        return template

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1).strip()
        if name not in variables:
            return match.group(0)
        return _render(variables[name])

    return PLACEHOLDER.sub(replace, template)
