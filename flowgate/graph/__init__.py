"""Graph structures: nodes, edges, traversal, approval and resume."""

from flowgate.graph.agent import AgentSpec
from flowgate.graph.conditions import Branch, evaluate_predicate, select_branch
from flowgate.graph.edge import FlowEdge, FlowGraph
from flowgate.graph.executor import FlowExecutor, RunStatus, RunSummary, SkipReason
from flowgate.graph.hitl import ApprovalDecision, ApprovalResponse, ConfirmationRequest
from flowgate.graph.node import (
    ActionResult,
    AIResponse,
    BranchResult,
    ConversationTurn,
    ExecutionContext,
    FlowNode,
    MemoryEntry,
    NodeExecutor,
    NodeKind,
    NodeResult,
    NodeStatus,
    TokenUsage,
    TriggerResult,
    parse_node_output,
)
from flowgate.graph.resume import GateBypass, ReplayPlan, RetrySeed, plan_replay
from flowgate.graph.safe_eval import safe_eval
from flowgate.graph.variables import resolve_in_object, resolve_variables

__all__ = [
    # Graph
    "FlowGraph",
    "FlowEdge",
    "FlowNode",
    "NodeKind",
    "AgentSpec",
    # Execution
    "FlowExecutor",
    "ExecutionContext",
    "NodeExecutor",
    "NodeResult",
    "NodeStatus",
    "RunStatus",
    "RunSummary",
    "SkipReason",
    "ConversationTurn",
    "MemoryEntry",
    # Outputs
    "TriggerResult",
    "AIResponse",
    "ActionResult",
    "BranchResult",
    "TokenUsage",
    "parse_node_output",
    # Branching
    "Branch",
    "evaluate_predicate",
    "select_branch",
    "safe_eval",
    "resolve_variables",
    "resolve_in_object",
    # HITL and resume
    "ApprovalDecision",
    "ApprovalResponse",
    "ConfirmationRequest",
    "GateBypass",
    "ReplayPlan",
    "RetrySeed",
    "plan_replay",
]
