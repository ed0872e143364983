"""Deterministic in-process provider for tests and ``flowgate run --mock``."""

from collections.abc import Callable
from typing import Any

from flowgate.llm.provider import LLMProvider, LLMProviderError, LLMResponse


class MockLLMProvider(LLMProvider):
    """
    Returns canned responses without any network access.

    ``responses`` may be a single string (returned every time), a list
    (returned in order, the last one repeating) or a callable receiving the
    message list. An ``error`` is raised on every call instead.
    """

    def __init__(
        self,
        responses: str | list[str] | Callable[[list[dict[str, Any]]], str] = "Mock response.",
        model: str = "mock/mock-model",
        error: LLMProviderError | None = None,
    ):
        self.responses = responses
        self.model = model
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def _next_content(self, messages: list[dict[str, Any]]) -> str:
        if callable(self.responses):
            return self.responses(messages)
        if isinstance(self.responses, str):
            return self.responses
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append(
            {
                "messages": messages,
                "system": system,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "json_mode": json_mode,
            }
        )
        if self.error is not None:
            raise self.error
        content = self._next_content(messages)
        prompt_chars = sum(len(str(m.get("content", ""))) for m in messages) + len(system)
        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=prompt_chars // 4,
            output_tokens=len(content) // 4,
            stop_reason="end_turn",
        )

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        return self.complete(
            messages,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )
