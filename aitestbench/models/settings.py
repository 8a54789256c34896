"""Projection of effective settings onto outbound request fields."""

import math
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ConfigDict

from aitestbench.models.base import Model


class ModelParams(Model):
    """Effective settings allowed into a chat/completion request body.

    Administrative settings (timeouts, retention, retries...) are dropped by
    construction: only the fields declared here are ever merged into a body.
    """

    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    messages: Sequence[Any] | None = None
    prompt: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None
    stream: bool | None = None
    seed: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    repetition_penalty: float | None = None
    stop: str | Sequence[str] | None = None
    tools: Sequence[Any] | None = None
    tool_choice: Any = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None) -> "ModelParams":
        """Pick the allowed fields out of an effective settings mapping."""
        return cls.model_validate(dict(settings or {}))

    def to_body(self) -> dict[str, Any]:
        """Fields that were present in the settings, ready to merge into a body."""
        return self.model_dump(mode="json", exclude_unset=True)


def request_timeout_sec(settings: Mapping[str, Any] | None, default: float) -> float:
    """Exchange timeout in seconds from effective settings.

    Raises:
        ValueError: If ``request_timeout_sec`` is not a positive number

    """
    raw = (settings or {}).get("request_timeout_sec")
    if raw is None:
        return default
    try:
        timeout = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid request_timeout_sec: {raw!r}") from None
    if not math.isfinite(timeout) or timeout <= 0:
        raise ValueError(f"Invalid request_timeout_sec: {raw!r}")
    return timeout
