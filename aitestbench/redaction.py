"""Redact secrets from captured request data."""

from collections.abc import Collection, Mapping

REDACTED = "***"

SENSITIVE_HEADERS = frozenset(
    {"authorization", "proxy-authorization", "api-key", "x-api-key", "cookie"}
)
SENSITIVE_FRAGMENTS = ("token", "secret")


def is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in SENSITIVE_HEADERS or any(
        fragment in lowered for fragment in SENSITIVE_FRAGMENTS
    )


def redact_headers(
    headers: Mapping[str, str], sensitive: Collection[str] = ()
) -> dict[str, str]:
    """Copy of ``headers`` with credential values masked.

    Args:
        headers: Headers as sent
        sensitive: Additional header names to mask regardless of their name,
            such as the configured authentication header of a target

    """
    extra = {key.lower() for key in sensitive}
    return {
        key: REDACTED if key.lower() in extra or is_sensitive(key) else value
        for key, value in headers.items()
    }
