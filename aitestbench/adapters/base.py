"""Abstract base for inference server API adapters."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from aitestbench.models.result import StreamEvent


@dataclass(frozen=True, kw_only=True)
class TokenUsage:
    """Token counts reported by a server, when it reports any."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(frozen=True, kw_only=True)
class ApiAdapter(ABC):
    """Knowledge about one API family (OpenAI-compatible, Ollama...).

    The executor stays protocol agnostic; adapters only supply defaults and
    interpret server specific usage reporting.
    """

    key: str
    default_path: str

    @abstractmethod
    def extract_usage(self, body: Any, events: Sequence[StreamEvent]) -> TokenUsage:
        """Read token counts from a decoded body or decoded stream events.

        Args:
            body: Decoded JSON body, or None when the body was not JSON
            events: Decoded stream events (empty for non streaming responses)

        Returns:
            Token usage; unknown counts are None

        """


def as_count(value: Any) -> int | None:
    """Coerce a reported token count, ignoring anything that is not a number."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)
