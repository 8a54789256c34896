"""Placeholder substitution in request templates and assertions."""

from collections.abc import Mapping
from typing import Any


def replace_placeholders(value: Any, replacements: Mapping[str, Any]) -> Any:
    """Replace ``{name}`` in every string nested in ``value``.

    Non string replacement values are inserted with ``str()``.
    """
    if isinstance(value, str):
        for key, replacement in replacements.items():
            value = value.replace(f"{{{key}}}", str(replacement))
        return value
    if isinstance(value, list | tuple):
        return [replace_placeholders(entry, replacements) for entry in value]
    if isinstance(value, Mapping):
        return {
            key: replace_placeholders(entry, replacements)
            for key, entry in value.items()
        }
    return value
