"""
Resume controller: replay a run from a chosen node.

A RetrySeed names the node to retry from and carries the outputs of a
previous run. Everything strictly upstream of the retry node is replayed
from those outputs (``node-reused``) instead of being executed again, so
completed side effects are never repeated. The retry node itself and
everything downstream of it run fresh.

The same mechanism finishes an approval pause: the human's decision is
turned into a seed whose retry node is the paused action, with the
approved (or edited) arguments and a one-shot gate bypass attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from flowgate.errors import GraphInputError, RetrySeedError
from flowgate.graph.edge import FlowGraph
from flowgate.graph.hitl import (
    ApprovalDecision,
    ApprovalResponse,
    ConfirmationRequest,
    args_fingerprint,
)
from flowgate.graph.node import parse_node_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateBypass:
    """
    Authorisation to skip the gate once, for one node and one exact payload.

    The approval itself is the authorisation; a different payload (or a
    different node) goes through the gate as usual.
    """

    node_id: str
    fingerprint: str

    @classmethod
    def for_args(cls, node_id: str, args: dict[str, Any]) -> GateBypass:
        return cls(node_id=node_id, fingerprint=args_fingerprint(args))

    def matches(self, node_id: str, args: dict[str, Any]) -> bool:
        return node_id == self.node_id and args_fingerprint(args) == self.fingerprint


@dataclass
class RetrySeed:
    """
    Input for a resumed run.

    ``failed_nodes`` lists upstream nodes that failed non-critically in the
    previous run; they have no output but their dependants still ran.
    """

    retry_from_node_id: str
    previous_node_outputs: dict[str, Any] = field(default_factory=dict)
    failed_nodes: set[str] = field(default_factory=set)
    args_override: dict[str, Any] | None = None
    gate_bypass: GateBypass | None = None
    rejected: bool = False

    @classmethod
    def from_raw(
        cls,
        retry_from_node_id: str,
        previous_node_outputs: dict[str, Any] | None,
        **kwargs: Any,
    ) -> RetrySeed:
        """Parse serialised outputs through the NodeOutput union."""
        parsed: dict[str, Any] = {}
        errors: list[str] = []
        for node_id, raw in (previous_node_outputs or {}).items():
            try:
                parsed[node_id] = parse_node_output(raw)
            except ValidationError as e:
                errors.append(f"previous output for '{node_id}' is invalid: {e.errors()[0]['msg']}")
        if errors:
            raise GraphInputError(errors)
        return cls(retry_from_node_id=retry_from_node_id, previous_node_outputs=parsed, **kwargs)


@dataclass
class ReplayPlan:
    """
    What a resumed run does before normal traversal starts.

    ``reuse`` and ``skip`` are strict ancestors of the retry node in
    topological order. ``edge_states`` holds the resolution of every edge
    leaving them.
    """

    retry_from_node_id: str
    reuse: list[str] = field(default_factory=list)
    skip: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    edge_states: dict[str, bool] = field(default_factory=dict)
    descendants: set[str] = field(default_factory=set)


def plan_replay(graph: FlowGraph, seed: RetrySeed) -> ReplayPlan:
    """
    Work out which ancestors are reused and which were not on the live path.

    An ancestor is required when it is an entry node or one of its forward
    incoming edges is active given the cached outputs upstream of it. Every
    required ancestor needs a cached output (or a non-critical failure
    record); otherwise RetrySeedError is raised.
    """
    target = seed.retry_from_node_id
    if graph.get_node(target) is None:
        raise GraphInputError(f"Retry node '{target}' not found in graph")

    # Nodes on a cycle through the target are downstream of it as well; they re-run.
    descendants = graph.descendants(target)
    ancestors = graph.ancestors(target) - descendants
    back = graph.back_edges()
    entries = set(graph.entry_nodes())
    plan = ReplayPlan(retry_from_node_id=target, descendants=descendants)
    missing: list[str] = []

    for node_id in graph.topological_order(ancestors):
        incoming = [e for e in graph.get_incoming_edges(node_id) if e.id not in back]
        live = node_id in entries or not incoming or any(
            plan.edge_states.get(e.id, False) for e in incoming
        )
        outgoing = graph.get_outgoing_edges(node_id)

        if not live:
            plan.skip.append(node_id)
            for e in outgoing:
                plan.edge_states[e.id] = False
            continue

        output = seed.previous_node_outputs.get(node_id)
        if output is None:
            if node_id in seed.failed_nodes:
                plan.failed.append(node_id)
                for e in outgoing:
                    plan.edge_states[e.id] = True
                continue
            missing.append(node_id)
            continue

        plan.reuse.append(node_id)
        for e in outgoing:
            plan.edge_states[e.id] = e.is_active_for(output)

    if missing:
        raise RetrySeedError(target, missing)

    logger.debug(
        f"Replay plan for '{target}': reuse={plan.reuse} skip={plan.skip} failed={plan.failed}"
    )
    return plan


def resume_after_decision(
    request: ConfirmationRequest,
    response: ApprovalResponse | ApprovalDecision | str,
    previous_node_outputs: dict[str, Any],
    edited_args: dict[str, Any] | None = None,
    failed_nodes: set[str] | None = None,
) -> RetrySeed:
    """
    Turn a human decision on a paused action into a retry seed.

    approved            -> recorded args + one-shot bypass for them
    approved_with_edits -> edited args replace the recorded ones + bypass on the edits
    rejected            -> the node is finalised as skipped, dependants follow
    """
    if not isinstance(response, ApprovalResponse):
        response = ApprovalResponse(
            request_id=request.request_id,
            decision=ApprovalDecision(response),
            edited_args=edited_args,
        )

    seed = RetrySeed.from_raw(
        request.node_id,
        previous_node_outputs,
        failed_nodes=set(failed_nodes or ()),
    )

    if response.decision == ApprovalDecision.REJECTED:
        seed.rejected = True
        logger.info(f"Action '{request.action}' on node '{request.node_id}' rejected")
        return seed

    args = response.effective_args(request)
    seed.args_override = args
    seed.gate_bypass = GateBypass.for_args(request.node_id, args)
    logger.info(
        f"Action '{request.action}' on node '{request.node_id}' {response.decision.value}"
    )
    return seed
