"""
Integration adapters - the functions that actually perform actions.

The engine never talks to third-party APIs itself. The surrounding
application registers one adapter per action (or a default adapter for all
of them); an action node looks its adapter up here once the gate allowed it.

An adapter is anything with:

    async def execute(self, action: str, args: dict) -> Any

Plain callables (sync or async) can be registered with register_function().
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """An adapter could not perform the action."""

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class IntegrationAdapter(Protocol):
    async def execute(self, action: str, args: dict[str, Any]) -> Any: ...


class FunctionAdapter:
    """Wraps a plain ``func(args)`` or ``func(action, args)`` callable."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func
        self._takes_action = len(inspect.signature(func).parameters) >= 2

    async def execute(self, action: str, args: dict[str, Any]) -> Any:
        call_args = (action, args) if self._takes_action else (args,)
        if inspect.iscoroutinefunction(self.func):
            return await self.func(*call_args)
        return await asyncio.to_thread(self.func, *call_args)


class HttpWebhookAdapter:
    """
    Forwards actions to an HTTP endpoint of the surrounding application.

    POSTs ``{"action": ..., "args": {...}}`` and returns the decoded JSON
    body (or the text when the body is not JSON).
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    async def execute(self, action: str, args: dict[str, Any]) -> Any:
        payload = {"action": action, "args": args}
        if self._client is not None:
            response = await self._client.post(
                self.url, json=payload, headers=self.headers, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.url, json=payload, headers=self.headers, timeout=self.timeout
                )
        return self._handle_response(action, response)

    def _handle_response(self, action: str, response: httpx.Response) -> Any:
        """Map HTTP status codes onto AdapterError."""
        status = response.status_code
        if status == 429:
            raise AdapterError("Rate limit exceeded. Try again later.", True, status)
        if status >= 500:
            raise AdapterError(f"{action} failed upstream (HTTP {status})", True, status)
        if status in (401, 403):
            raise AdapterError(f"Not authorised to perform {action}", False, status)
        if status >= 400:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            raise AdapterError(f"{action} rejected (HTTP {status}): {detail}", False, status)
        try:
            return response.json()
        except ValueError:
            return response.text


class AdapterRegistry:
    """
    Action name -> adapter.

    Example:
        adapters = AdapterRegistry()
        adapters.register_function("send_email", gmail_send)
        adapters.set_default(HttpWebhookAdapter("https://app.internal/actions"))
    """

    def __init__(self, default: IntegrationAdapter | None = None):
        self._adapters: dict[str, IntegrationAdapter] = {}
        self._default = default

    def register(self, action: str, adapter: IntegrationAdapter) -> None:
        self._adapters[action] = adapter

    def register_function(self, action: str, func: Callable[..., Any]) -> None:
        """Register a plain function as the adapter for ``action``."""
        self._adapters[action] = FunctionAdapter(func)

    def set_default(self, adapter: IntegrationAdapter) -> None:
        self._default = adapter

    def get(self, action: str) -> IntegrationAdapter | None:
        return self._adapters.get(action, self._default)

    def __contains__(self, action: str) -> bool:
        return self.get(action) is not None


def is_retryable(error: Exception) -> bool:
    """Whether a failed adapter call may succeed if tried again."""
    if isinstance(error, AdapterError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == 429 or error.response.status_code >= 500
    return isinstance(error, httpx.TimeoutException | httpx.NetworkError)
