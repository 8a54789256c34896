"""OpenAI-compatible API adapter."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from aitestbench.adapters.base import ApiAdapter, TokenUsage, as_count
from aitestbench.models.result import StreamEvent


@dataclass(frozen=True, kw_only=True)
class OpenAIAdapter(ApiAdapter):
    """Reads the ``usage`` object of chat/completion responses.

    When streaming, usage is only present on the last chunks (and only when the
    client asked for it), so events are scanned from the end.
    """

    def extract_usage(self, body: Any, events: Sequence[StreamEvent]) -> TokenUsage:
        candidates = [body, *(event.json for event in reversed(events))]
        for candidate in candidates:
            if isinstance(candidate, dict) and isinstance(candidate.get("usage"), dict):
                usage = candidate["usage"]
                return TokenUsage(
                    prompt_tokens=as_count(usage.get("prompt_tokens")),
                    completion_tokens=as_count(usage.get("completion_tokens")),
                )
        return TokenUsage()


openai_adapter = OpenAIAdapter(
    key="openai-compatible", default_path="/v1/chat/completions"
)
