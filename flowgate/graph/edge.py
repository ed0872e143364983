"""
Edge Protocol - How nodes connect in a flow graph.

A FlowGraph is an immutable description of nodes and directed edges. It has
no behavior beyond structural queries: validation, entry detection, ancestor
and descendant sets, and a deterministic classification of back edges so the
executor can tell loop iterations apart from forward dependencies.

Graph input is accepted in the editor format:

    {
        "nodes": [{"id": "t", "type": "messageReceived", "data": {...}}],
        "edges": [{"id": "e1", "source": "t", "target": "ai", "sourceHandle": null}]
    }
"""

from __future__ import annotations

from collections import deque
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flowgate.errors import GraphInputError
from flowgate.graph.node import FlowNode, NodeKind


class FlowEdge(BaseModel):
    """
    A directed edge between two nodes.

    Example:
        FlowEdge(id="route-yes", source="router", target="send", source_handle="branch-0")
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")

    # Handles let a branch node select which outgoing edge is followed
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    def is_active_for(self, output: Any) -> bool:
        """
        Whether this edge is followed once its source produced ``output``.

        Every outgoing edge of a completed node is followed, except after a
        branch-result, where only the edge whose handle was selected is.
        """
        if getattr(output, "type", None) == "branch-result":
            selected = output.selected_handle
            return selected is not None and self.source_handle == selected
        return True


class FlowGraph(BaseModel):
    """
    Complete description of an agent's flow.

    Nodes and edges keep their declaration order; every traversal decision
    that depends on ordering uses it, which keeps runs deterministic.
    """

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", frozen=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowGraph:
        """Parse editor-format graph input. Raises GraphInputError on bad shape."""
        if not isinstance(data, dict):
            raise GraphInputError("Graph input must be an object with 'nodes' and 'edges'")
        try:
            return cls.model_validate(
                {"nodes": data.get("nodes") or [], "edges": data.get("edges") or []}
            )
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise GraphInputError(messages) from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.model_dump(by_alias=True) for n in self.nodes],
            "edges": [e.model_dump(by_alias=True) for e in self.edges],
        }

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> FlowNode | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        """Get all edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[FlowEdge]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def entry_nodes(self) -> list[str]:
        """Nodes with no incoming edges, plus every explicit trigger node."""
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.kind == NodeKind.TRIGGER or n.id not in targets]

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def ancestors(self, node_id: str) -> set[str]:
        """Strict ancestors of a node over all edges."""
        seen: set[str] = set()
        to_visit = [e.source for e in self.get_incoming_edges(node_id)]
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(e.source for e in self.get_incoming_edges(current))
        seen.discard(node_id)
        return seen

    def descendants(self, node_id: str) -> set[str]:
        """Strict descendants of a node over all edges."""
        seen: set[str] = set()
        to_visit = [e.target for e in self.get_outgoing_edges(node_id)]
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(e.target for e in self.get_outgoing_edges(current))
        seen.discard(node_id)
        return seen

    def reachable_from(self, start: list[str]) -> set[str]:
        reachable: set[str] = set()
        to_visit = list(start)
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            to_visit.extend(e.target for e in self.get_outgoing_edges(current))
        return reachable

    def back_edges(self) -> set[str]:
        """
        IDs of edges that close a cycle.

        Found with an iterative DFS from the entry nodes in declaration order,
        so the same graph always yields the same classification. An edge whose
        target is on the current DFS stack is a back edge.
        """
        back: set[str] = set()
        visited: set[str] = set()
        on_stack: set[str] = set()

        roots = self.entry_nodes() + [n for n in self.node_ids() if n not in self.entry_nodes()]
        for root in roots:
            if root in visited:
                continue
            visited.add(root)
            on_stack.add(root)
            stack: list[tuple[str, deque[FlowEdge]]] = [
                (root, deque(self.get_outgoing_edges(root)))
            ]
            while stack:
                node_id, pending = stack[-1]
                if not pending:
                    stack.pop()
                    on_stack.discard(node_id)
                    continue
                edge = pending.popleft()
                if edge.target in on_stack:
                    back.add(edge.id)
                elif edge.target not in visited:
                    visited.add(edge.target)
                    on_stack.add(edge.target)
                    stack.append((edge.target, deque(self.get_outgoing_edges(edge.target))))
        return back

    def topological_order(self, subset: set[str] | None = None) -> list[str]:
        """
        Kahn ordering over forward edges (back edges ignored), restricted to
        ``subset`` when given. Ties break by declaration order.
        """
        back = self.back_edges()
        members = [n for n in self.node_ids() if subset is None or n in subset]
        member_set = set(members)
        indegree = {n: 0 for n in members}
        for e in self.edges:
            if e.id in back or e.source not in member_set or e.target not in member_set:
                continue
            indegree[e.target] += 1

        order: list[str] = []
        ready = [n for n in members if indegree[n] == 0]
        while ready:
            current = ready.pop(0)
            order.append(current)
            for e in self.get_outgoing_edges(current):
                if e.id in back or e.target not in member_set:
                    continue
                indegree[e.target] -= 1
                if indegree[e.target] == 0:
                    ready.append(e.target)
        return order

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Validate the graph structure. Returns a list of error strings."""
        errors: list[str] = []

        if not self.nodes:
            errors.append("Graph has no nodes")
            return errors

        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in seen_nodes:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edges.add(edge.id)
            if edge.source not in seen_nodes:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in seen_nodes:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        if errors:
            return errors

        entries = self.entry_nodes()
        if not entries:
            errors.append("Graph has no entry node (every node has an incoming edge)")
            return errors

        reachable = self.reachable_from(entries)
        for node in self.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from entry")

        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise GraphInputError(errors)
