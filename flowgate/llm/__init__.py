"""LLM provider abstraction."""

from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.provider import LLMProvider, LLMProviderError, LLMResponse
from flowgate.llm.registry import ProviderRegistry, model_family

__all__ = [
    "LLMProvider",
    "LLMProviderError",
    "LLMResponse",
    "MockLLMProvider",
    "ProviderRegistry",
    "model_family",
]
