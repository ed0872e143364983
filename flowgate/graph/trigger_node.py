"""Trigger node: the entry step of a flow."""

from __future__ import annotations

from flowgate.graph.node import ExecutionContext, FlowNode, NodeResult, TriggerResult


class TriggerNode:
    """
    Emits the triggering message as a trigger-result.

    A static ``config.payload`` is merged in; the user message always wins
    under the ``message`` key.
    """

    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult:
        payload = dict(node.config.get("payload") or {})
        payload["message"] = ctx.user_message
        if ctx.conversation_id:
            payload.setdefault("conversation_id", ctx.conversation_id)
        return NodeResult.completed(TriggerResult(payload=payload))
