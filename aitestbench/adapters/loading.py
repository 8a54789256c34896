"""Resolve the API adapter of a target from its declared API family."""

from importlib.metadata import entry_points

from aitestbench.adapters.base import ApiAdapter

ENTRY_POINT_GROUP = "aitestbench.adapters"

# Provider names used by older target records.
FAMILY_ALIASES = {
    "openai": "openai-compatible",
}


class AdapterNotFoundError(Exception):
    """Raised when no adapter is registered for an API family."""


def normalise_family(api_family: str) -> str:
    """Canonical adapter key of an API family name."""
    key = api_family.strip().lower()
    return FAMILY_ALIASES.get(key, key)


def load_adapter(api_family: str) -> ApiAdapter:
    """Load the adapter registered for an API family.

    Args:
        api_family: API family of a target (e.g., "openai-compatible", "ollama");
            case and surrounding whitespace are ignored and legacy provider
            names are accepted

    Returns:
        The adapter instance

    Raises:
        AdapterNotFoundError: If no adapter is registered for the family
        TypeError: If the registered object is not an ApiAdapter

    """
    key = normalise_family(api_family)
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    if not matches:
        available = sorted(e.name for e in entry_points(group=ENTRY_POINT_GROUP))
        raise AdapterNotFoundError(
            f"Adapter '{api_family}' not found. Available adapters: {available}"
        )

    entry = next(iter(matches))
    adapter = entry.load()
    if not isinstance(adapter, ApiAdapter):
        raise TypeError(
            f"Entry point '{entry.name}' ({entry.value}) is not an ApiAdapter"
        )
    return adapter
