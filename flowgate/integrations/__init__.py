"""Integration adapters supplied by the surrounding application."""

from flowgate.integrations.adapters import (
    AdapterError,
    AdapterRegistry,
    FunctionAdapter,
    HttpWebhookAdapter,
    IntegrationAdapter,
    is_retryable,
)

__all__ = [
    "AdapterError",
    "AdapterRegistry",
    "FunctionAdapter",
    "HttpWebhookAdapter",
    "IntegrationAdapter",
    "is_retryable",
]
