"""
Branch node: picks one outgoing edge by handle.

Node config:
    branches   [{"handle": "urgent", "when": "contains urgent"}, ...]
    conditions [{"id": "c1", "text": "contains urgent"}, ...]   (editor form,
               handles are "branch-<index>")
    subject    text the predicates test, default: the last completed output
    default    handle used when nothing matches

The result depends only on the node config and completed outputs, so a
replayed run re-selects the same handle.
"""

from __future__ import annotations

import logging
from typing import Any

from flowgate.graph.conditions import Branch, select_branch
from flowgate.graph.node import BranchResult, ExecutionContext, FlowNode, NodeResult
from flowgate.graph.variables import resolve_variables

logger = logging.getLogger(__name__)


def parse_branches(config: dict[str, Any]) -> list[Branch]:
    branches: list[Branch] = []
    for item in config.get("branches") or []:
        if isinstance(item, dict) and item.get("handle") is not None:
            branches.append(Branch(handle=str(item["handle"]), when=str(item.get("when", ""))))
    if branches:
        return branches
    for index, item in enumerate(config.get("conditions") or []):
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            branches.append(Branch(handle=f"branch-{index}", when=item["text"]))
    return branches


class BranchNode:
    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult:
        branches = parse_branches(node.config)
        if node.config.get("subject") is not None:
            subject = resolve_variables(str(node.config["subject"]), ctx.node_outputs)
        else:
            subject = ctx.last_output_text()

        scope = {
            "output": subject,
            "outputs": ctx.outputs_as_dict(),
            "message": ctx.user_message,
            "memory": ctx.memory_map(),
        }
        handle = select_branch(
            branches,
            subject,
            ctx.node_outputs,
            scope=scope,
            default=node.config.get("default"),
        )
        logger.info(f"Branch '{node.id}' selected {handle!r}")
        return NodeResult.completed(BranchResult(selected_handle=handle))
