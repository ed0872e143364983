"""LiteLLM provider - one interface over Anthropic, OpenAI and the rest.

Model strings use LiteLLM's ``provider/model`` convention, e.g.
``anthropic/claude-haiku-4-5-20251001`` or ``openai/gpt-4o-mini``.
"""

import logging
from typing import Any

import litellm

from flowgate.llm.provider import LLMProvider, LLMProviderError, LLMResponse

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider backed by litellm.

    Example:
        llm = LiteLLMProvider(model="anthropic/claude-haiku-4-5-20251001")
        response = llm.complete([{"role": "user", "content": "Hello"}])
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        system: str,
        max_tokens: int,
        temperature: float | None,
        json_mode: bool,
    ) -> dict[str, Any]:
        full_messages = list(messages)
        if system:
            full_messages = [{"role": "system", "content": system}, *full_messages]

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.timeout:
            kwargs["timeout"] = self.timeout
        return kwargs

    def _to_response(self, raw: Any) -> LLMResponse:
        choice = raw.choices[0]
        content = choice.message.content or ""
        if not content.strip():
            raise LLMProviderError(f"Empty response from {self.model}", retryable=True)

        usage = getattr(raw, "usage", None)
        return LLMResponse(
            content=content,
            model=getattr(raw, "model", None) or self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=raw,
        )

    def _wrap_error(self, e: Exception) -> LLMProviderError:
        status_code = getattr(e, "status_code", None)
        retryable = isinstance(e, _RETRYABLE_ERRORS) or (
            isinstance(status_code, int) and status_code >= 500
        )
        logger.warning(f"LLM call to {self.model} failed ({type(e).__name__}): {e}")
        return LLMProviderError(str(e), retryable=retryable, status_code=status_code)

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        try:
            raw = litellm.completion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e) from e
        return self._to_response(raw)

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        try:
            raw = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e) from e
        return self._to_response(raw)
