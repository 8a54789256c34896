"""API adapters for the supported inference server families."""

from aitestbench.adapters.base import ApiAdapter, TokenUsage
from aitestbench.adapters.loading import AdapterNotFoundError, load_adapter
from aitestbench.adapters.ollama import OllamaAdapter, ollama_adapter
from aitestbench.adapters.openai import OpenAIAdapter, openai_adapter

__all__ = [
    "AdapterNotFoundError",
    "ApiAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "TokenUsage",
    "load_adapter",
    "ollama_adapter",
    "openai_adapter",
]
