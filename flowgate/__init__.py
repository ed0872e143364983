"""
flowgate - run agent flow graphs with every side effect behind an evaluation gate.

    runtime = FlowRuntime(registry=ProviderRegistry.with_litellm("fast"), adapters=adapters)
    handle = await runtime.execute(graph, "Where is my order?", agent=agent)
    async for event in handle:
        print(event.to_json())
"""

from flowgate.errors import (
    BudgetExceededError,
    CancellationError,
    FlowError,
    GateBlockError,
    GraphInputError,
    NodeExecutionError,
    RetrySeedError,
)
from flowgate.eval import EvalRules, EvalVerdict, EvaluationGate, LLMJudge
from flowgate.graph import (
    AgentSpec,
    ApprovalDecision,
    ConfirmationRequest,
    FlowExecutor,
    FlowGraph,
    RetrySeed,
    RunStatus,
    RunSummary,
)
from flowgate.integrations import AdapterRegistry, FunctionAdapter, HttpWebhookAdapter
from flowgate.llm import LLMProvider, MockLLMProvider, ProviderRegistry
from flowgate.runtime import EventBus, EventType, LifecycleEvent
from flowgate.runtime.flow_runtime import FlowRuntime, InMemoryConversationStore, RunHandle

__version__ = "0.1.0"

__all__ = [
    "AdapterRegistry",
    "AgentSpec",
    "ApprovalDecision",
    "BudgetExceededError",
    "CancellationError",
    "ConfirmationRequest",
    "EvalRules",
    "EvalVerdict",
    "EvaluationGate",
    "EventBus",
    "EventType",
    "FlowError",
    "FlowExecutor",
    "FlowGraph",
    "FlowRuntime",
    "FunctionAdapter",
    "GateBlockError",
    "GraphInputError",
    "HttpWebhookAdapter",
    "InMemoryConversationStore",
    "LLMJudge",
    "LLMProvider",
    "LifecycleEvent",
    "MockLLMProvider",
    "NodeExecutionError",
    "ProviderRegistry",
    "RetrySeed",
    "RunHandle",
    "RunStatus",
    "RunSummary",
]
