"""Ollama API adapter."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from aitestbench.adapters.base import ApiAdapter, TokenUsage, as_count
from aitestbench.models.result import StreamEvent


@dataclass(frozen=True, kw_only=True)
class OllamaAdapter(ApiAdapter):
    """Reads ``prompt_eval_count``/``eval_count`` from the final response object."""

    def extract_usage(self, body: Any, events: Sequence[StreamEvent]) -> TokenUsage:
        candidates = [body, *(event.json for event in reversed(events))]
        for candidate in candidates:
            if isinstance(candidate, dict) and "eval_count" in candidate:
                return TokenUsage(
                    prompt_tokens=as_count(candidate.get("prompt_eval_count")),
                    completion_tokens=as_count(candidate.get("eval_count")),
                )
        return TokenUsage()


ollama_adapter = OllamaAdapter(key="ollama", default_path="/api/chat")
