"""
Language-model node.

Builds one user message from the run context and sends it, together with
the agent's system prompt and the node's own instructions, to the provider
that serves the configured model.

Node config:
    prompt          task for this step, may contain {{nodeId.field}} tokens
    instructions    extra system instructions for this step
    model           model string or tier (fast | smart | deep)
    temperature     sampling temperature
    max_tokens      output token limit
    timeout_seconds hard timeout for the provider call
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from flowgate.config import RuntimeConfig
from flowgate.errors import NodeExecutionError
from flowgate.graph.node import (
    AIResponse,
    ExecutionContext,
    FlowNode,
    NodeResult,
    TokenUsage,
)
from flowgate.graph.variables import resolve_variables
from flowgate.llm.provider import LLMProviderError
from flowgate.llm.registry import ProviderRegistry

logger = logging.getLogger(__name__)

RECENT_TURNS = 5
TURN_PREVIEW_CHARS = 300


def build_message_content(ctx: ExecutionContext, task: str) -> str:
    """Assemble the single user message a language-model step sends."""
    sections: list[str] = []
    if ctx.user_message:
        sections.append(f"User message: {ctx.user_message}")
    if ctx.summary:
        sections.append(f"Conversation summary:\n{ctx.summary}")
    if ctx.history:
        lines = []
        for turn in ctx.history[-RECENT_TURNS:]:
            text = turn.content[:TURN_PREVIEW_CHARS]
            if len(turn.content) > TURN_PREVIEW_CHARS:
                text += "..."
            lines.append(f"{turn.role}: {text}")
        sections.append("Recent conversation:\n" + "\n".join(lines))
    if ctx.memories:
        sections.append(
            "Agent memories:\n" + "\n".join(f"- {m.key}: {m.value}" for m in ctx.memories)
        )
    if ctx.node_outputs:
        previous = json.dumps(ctx.outputs_as_dict(), indent=2, default=str)
        sections.append(f"Previous step outputs:\n{previous}")
    sections.append(f"Task: {task}")
    return "\n\n".join(sections)


class LLMNode:
    """Runs language-model steps against a ProviderRegistry."""

    def __init__(self, registry: ProviderRegistry, config: RuntimeConfig | None = None):
        self.registry = registry
        self.config = config or RuntimeConfig()

    def _system_prompt(self, node: FlowNode, ctx: ExecutionContext) -> str:
        parts = []
        if ctx.agent and ctx.agent.system_prompt:
            parts.append(ctx.agent.system_prompt)
        instructions = node.config.get("instructions") or node.config.get("system_prompt")
        if instructions:
            parts.append(resolve_variables(str(instructions), ctx.node_outputs))
        return "\n\n".join(parts)

    def _model(self, node: FlowNode, ctx: ExecutionContext) -> str:
        return (
            node.config.get("model")
            or (ctx.agent.model if ctx.agent else None)
            or self.config.model
        )

    def _temperature(self, node: FlowNode, ctx: ExecutionContext) -> float:
        if node.config.get("temperature") is not None:
            return float(node.config["temperature"])
        if ctx.agent and ctx.agent.temperature is not None:
            return ctx.agent.temperature
        return self.config.temperature

    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult:
        raw_prompt = node.config.get("prompt") or node.config.get("label") or "Process the input"
        task = resolve_variables(str(raw_prompt), ctx.node_outputs)
        model = self._model(node, ctx)
        temperature = self._temperature(node, ctx)
        max_tokens = int(node.config.get("max_tokens") or self.config.max_tokens)
        timeout = node.config.get("timeout_seconds")

        try:
            provider = self.registry.resolve(model)
        except LookupError as e:
            return NodeResult.failed(NodeExecutionError(str(e), node_id=node.id))

        messages: list[dict[str, Any]] = [
            {"role": "user", "content": build_message_content(ctx, task)}
        ]
        start = time.monotonic()
        try:
            call = provider.acomplete(
                messages=messages,
                system=self._system_prompt(node, ctx),
                max_tokens=max_tokens,
                temperature=temperature,
            )
            if timeout:
                response = await asyncio.wait_for(call, timeout=float(timeout))
            else:
                response = await call
        except TimeoutError:
            return NodeResult.failed(
                NodeExecutionError(
                    f"Model call timed out after {timeout}s", node_id=node.id, retryable=True
                )
            )
        except LLMProviderError as e:
            logger.warning(f"Provider error in node '{node.id}': {e}")
            return NodeResult.failed(
                NodeExecutionError(f"AI step failed: {e}", node_id=node.id, retryable=e.retryable)
            )

        output = AIResponse(
            content=response.content,
            model=response.model or model,
            usage=TokenUsage(
                input_tokens=response.input_tokens, output_tokens=response.output_tokens
            ),
        )
        result = NodeResult.completed(output, tokens_used=output.usage.total)
        result.latency_ms = int((time.monotonic() - start) * 1000)
        return result
