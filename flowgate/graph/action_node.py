"""
Integration-action node.

Resolves the action's arguments, passes side-effecting actions through the
evaluation gate and only then calls the integration adapter:

    gate blocked            -> NodeStatus.BLOCKED, adapter never called
    gate requires approval  -> NodeStatus.AWAITING_CONFIRMATION + ConfirmationRequest
    gate allows / bypassed  -> adapter.execute(action, args) -> action-result

Node config:
    action       action name (defaults from the editor type, e.g. gmail -> send_email)
    args         action arguments; string values may contain {{nodeId.field}} tokens.
                 Without ``args`` the remaining top-level config keys are used.
    field_modes  {"body": "prompt" | "auto"} fills a field with a model call
    timeout_seconds  hard timeout for the adapter call
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from flowgate.errors import NodeExecutionError
from flowgate.eval.gate import EvalRules, EvaluationGate
from flowgate.graph.hitl import ConfirmationRequest
from flowgate.graph.node import (
    ActionResult,
    ExecutionContext,
    FlowNode,
    NodeResult,
    NodeStatus,
)
from flowgate.graph.variables import resolve_in_object, resolve_variables
from flowgate.integrations.adapters import AdapterRegistry, is_retryable
from flowgate.llm.provider import LLMProviderError
from flowgate.llm.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Config keys that are never action arguments
RESERVED_KEYS = {
    "label",
    "description",
    "action",
    "critical",
    "field_modes",
    "timeout_seconds",
}

FIELD_MODE_MODEL = "fast"

FIELD_PROMPTS = {
    "auto": (
        'Based on the following workflow context, extract the most appropriate value for the '
        'field "{field}".\n\nContext from previous steps:\n{context}\n\n{message}'
        "Return ONLY the value, nothing else. If no appropriate value can be found, "
        "return an empty string."
    ),
    "prompt": (
        'Based on the following workflow context, generate the "{field}" field.\n\n'
        "User instructions: {instructions}\n\nContext from previous steps:\n{context}\n\n"
        "{message}Return ONLY the generated value, nothing else."
    ),
}

FIELD_SYSTEM_PROMPT = (
    "You are a helpful assistant that fills in action fields. "
    "Return ONLY the requested value with no explanation or formatting."
)


class ActionNode:
    """Runs integration actions behind the evaluation gate."""

    def __init__(
        self,
        gate: EvaluationGate,
        adapters: AdapterRegistry,
        registry: ProviderRegistry | None = None,
    ):
        self.gate = gate
        self.adapters = adapters
        self.registry = registry

    def _raw_args(self, node: FlowNode) -> dict[str, Any]:
        if isinstance(node.config.get("args"), dict):
            return dict(node.config["args"])
        return {k: v for k, v in node.config.items() if k not in RESERVED_KEYS and k != "args"}

    async def _fill_field(
        self, field: str, mode: str, current: Any, ctx: ExecutionContext
    ) -> str:
        if self.registry is None:
            raise NodeExecutionError(f"Field '{field}' needs a model but none is configured")
        template = FIELD_PROMPTS[mode]
        prompt = template.format(
            field=field,
            instructions=current or f"Generate the {field} field",
            context=json.dumps(ctx.outputs_as_dict(), indent=2, default=str),
            message=f"User message: {ctx.user_message}\n\n" if ctx.user_message else "",
        )
        provider = self.registry.resolve(FIELD_MODE_MODEL)
        response = await provider.acomplete(
            messages=[{"role": "user", "content": prompt}],
            system=FIELD_SYSTEM_PROMPT,
            max_tokens=1024,
            temperature=0.3,
        )
        return response.content.strip()

    async def resolve_args(self, node: FlowNode, ctx: ExecutionContext) -> dict[str, Any]:
        """Arguments for this invocation. An approval override replaces them wholesale."""
        if node.id in ctx.args_overrides:
            return dict(ctx.args_overrides[node.id])

        args = resolve_in_object(self._raw_args(node), ctx.node_outputs)
        for field, mode in (node.config.get("field_modes") or {}).items():
            if mode == "manual":
                continue
            if mode not in FIELD_PROMPTS:
                raise NodeExecutionError(f"Unknown mode '{mode}' for field '{field}'")
            args[field] = await self._fill_field(field, mode, args.get(field), ctx)
        return args

    def _rules(self, ctx: ExecutionContext) -> EvalRules | None:
        return ctx.agent.eval_rules if ctx.agent else None

    def _gate_context(self, ctx: ExecutionContext) -> dict[str, Any]:
        context: dict[str, Any] = {"query": ctx.user_message}
        if ctx.agent:
            context["agent"] = ctx.agent.name
        return context

    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult:
        action = node.action
        if not action:
            return NodeResult.failed(
                NodeExecutionError("Action node has no action configured", node_id=node.id)
            )
        action = resolve_variables(action, ctx.node_outputs)

        try:
            args = await self.resolve_args(node, ctx)
        except NodeExecutionError as e:
            e.node_id = node.id
            return NodeResult.failed(e)
        except LLMProviderError as e:
            return NodeResult.failed(
                NodeExecutionError(
                    f"Could not fill fields for {action}: {e}",
                    node_id=node.id,
                    retryable=e.retryable,
                )
            )

        verdict = None
        if self.gate.applies_to(action):
            if ctx.consume_bypass(node.id, args):
                logger.info(f"Gate bypassed for '{node.id}' ({action}): approved payload")
            else:
                verdict = await self.gate.evaluate(
                    action, args, rules=self._rules(ctx), context=self._gate_context(ctx)
                )
                if verdict.blocked:
                    return NodeResult(status=NodeStatus.BLOCKED, verdict=verdict)
                if not verdict.may_proceed:
                    request = ConfirmationRequest(
                        run_id=ctx.run_id,
                        node_id=node.id,
                        action=action,
                        args=args,
                        title=f"{verdict.label or action}: {node.label}",
                        conversation_id=ctx.conversation_id,
                        verdict=verdict.model_dump(mode="json"),
                    )
                    return NodeResult(
                        status=NodeStatus.AWAITING_CONFIRMATION,
                        verdict=verdict,
                        confirmation=request,
                    )

        adapter = self.adapters.get(action)
        if adapter is None:
            return NodeResult.failed(
                NodeExecutionError(f"No adapter registered for action '{action}'", node.id)
            )

        timeout = node.config.get("timeout_seconds")
        start = time.monotonic()
        try:
            if timeout:
                data = await asyncio.wait_for(
                    adapter.execute(action, args), timeout=float(timeout)
                )
            else:
                data = await adapter.execute(action, args)
        except TimeoutError as e:
            error = NodeExecutionError(
                f"{action} timed out after {timeout}s", node_id=node.id, retryable=True
            )
            error.__cause__ = e
            return NodeResult.failed(error)
        except Exception as e:
            logger.warning(f"Adapter for {action} failed in node '{node.id}': {e}")
            error = NodeExecutionError(
                f"{action} failed: {e}", node_id=node.id, retryable=is_retryable(e)
            )
            error.__cause__ = e
            return NodeResult.failed(error)

        if isinstance(data, dict) and data.get("success") is False:
            return NodeResult.failed(
                NodeExecutionError(
                    f"{action} failed: {data.get('error') or 'adapter reported failure'}",
                    node_id=node.id,
                )
            )

        result = NodeResult.completed(ActionResult(action=action, success=True, data=data))
        result.verdict = verdict
        result.latency_ms = int((time.monotonic() - start) * 1000)
        return result
