"""
Provider registry keyed by model family.

Language-model nodes name a model; the registry picks the provider that
serves its family:

    "anthropic/claude-..."  -> "anthropic"
    "claude-..."            -> "anthropic"
    "openai/gpt-..."        -> "openai"
    "gpt-..." / "o1" / "o3" -> "openai"
    "fast" | "smart" | "deep" -> tier, expanded to a concrete model first

A family with no registered provider gets one from the factory (LiteLLM by
default); with no factory the default provider is used.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from flowgate.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

TIER_MODELS = {
    "fast": "anthropic/claude-haiku-4-5-20251001",
    "smart": "anthropic/claude-sonnet-4-5-20250929",
    "deep": "anthropic/claude-opus-4-5-20251101",
}


# Editor shorthands
MODEL_ALIASES = {
    "claude-haiku": "fast",
    "claude-sonnet": "smart",
    "claude-opus": "deep",
}


def expand_tier(model: str) -> str:
    model = MODEL_ALIASES.get(model, model)
    return TIER_MODELS.get(model, model)


def model_family(model: str) -> str:
    """Return the provider family of a model string."""
    model = expand_tier(model)
    if "/" in model:
        return model.split("/", 1)[0].lower()
    lowered = model.lower()
    if lowered.startswith("claude"):
        return "anthropic"
    if lowered.startswith(("gpt", "o1", "o3", "o4", "text-embedding")):
        return "openai"
    if lowered.startswith("gemini"):
        return "gemini"
    return "default"


class ProviderRegistry:
    """
    Resolve a provider for a model string.

    Example:
        registry = ProviderRegistry(default=LiteLLMProvider("anthropic/claude-haiku-4-5-20251001"))
        registry.register("openai", LiteLLMProvider("openai/gpt-4o-mini"))
        provider = registry.resolve("gpt-4o")
    """

    def __init__(
        self,
        default: LLMProvider | None = None,
        factory: Callable[[str], LLMProvider] | None = None,
    ):
        self._default = default
        self._factory = factory
        self._providers: dict[str, LLMProvider] = {}
        self._by_model: dict[str, LLMProvider] = {}

    @classmethod
    def with_litellm(cls, default_model: str, api_key: str | None = None) -> ProviderRegistry:
        """Registry whose providers are LiteLLM clients built on demand."""
        from flowgate.llm.litellm import LiteLLMProvider

        def factory(model: str) -> LLMProvider:
            return LiteLLMProvider(model=model, api_key=api_key)

        return cls(default=factory(expand_tier(default_model)), factory=factory)

    def register(self, family: str, provider: LLMProvider) -> None:
        self._providers[family.lower()] = provider

    @property
    def default(self) -> LLMProvider | None:
        return self._default

    def resolve(self, model: str | None = None) -> LLMProvider:
        """Pick the provider for ``model``. Raises LookupError if none fits."""
        if not model:
            if self._default is None:
                raise LookupError("No default LLM provider configured")
            return self._default

        family = model_family(model)
        if family in self._providers:
            return self._providers[family]

        if self._factory is not None:
            concrete = expand_tier(model)
            if concrete not in self._by_model:
                logger.debug(f"Creating provider for model '{concrete}' (family {family})")
                self._by_model[concrete] = self._factory(concrete)
            return self._by_model[concrete]

        if self._default is None:
            raise LookupError(f"No LLM provider registered for model '{model}'")
        return self._default
