"""
Node Protocol - The building block of flow graphs.

A node is one step of an agent's flow: a trigger, a language-model call, an
integration action or a branch. Node kinds form a closed set; every editor
type string is normalised onto it when the graph is parsed, so dispatch in
the executor is exhaustive.

Each kind is run by a NodeExecutor:

    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult

Executors return failures inside the NodeResult rather than raising. The
completed output of a node is a NodeOutput, a tagged union discriminated on
``type``:

    trigger-result   {payload}
    ai-response      {content, usage}
    action-result    {success, data | error}
    branch-result    {selected_handle}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from flowgate.errors import NodeExecutionError

if TYPE_CHECKING:
    from flowgate.eval.gate import EvalVerdict
    from flowgate.graph.agent import AgentSpec
    from flowgate.graph.hitl import ConfirmationRequest
    from flowgate.graph.resume import GateBypass


class NodeKind(StrEnum):
    """The closed set of node kinds the executor knows how to run."""

    TRIGGER = "trigger"
    LLM = "llm"
    ACTION = "action"
    BRANCH = "branch"


# Editor type names -> kind
NODE_TYPE_ALIASES: dict[str, NodeKind] = {
    "trigger": NodeKind.TRIGGER,
    "messageReceived": NodeKind.TRIGGER,
    "webhookTrigger": NodeKind.TRIGGER,
    "scheduleTrigger": NodeKind.TRIGGER,
    "manualTrigger": NodeKind.TRIGGER,
    "llm": NodeKind.LLM,
    "agentStep": NodeKind.LLM,
    "chatAgent": NodeKind.LLM,
    "action": NodeKind.ACTION,
    "composioAction": NodeKind.ACTION,
    "sendEmail": NodeKind.ACTION,
    "gmail": NodeKind.ACTION,
    "outlook": NodeKind.ACTION,
    "slack": NodeKind.ACTION,
    "microsoftTeams": NodeKind.ACTION,
    "notion": NodeKind.ACTION,
    "googleSheets": NodeKind.ACTION,
    "googleDrive": NodeKind.ACTION,
    "googleDocs": NodeKind.ACTION,
    "googleCalendar": NodeKind.ACTION,
    "outlookCalendar": NodeKind.ACTION,
    "branch": NodeKind.BRANCH,
    "condition": NodeKind.BRANCH,
}

# Editor types that imply an action when config.action is absent
DEFAULT_ACTION_FOR_TYPE: dict[str, str] = {
    "sendEmail": "send_email",
    "gmail": "send_email",
    "outlook": "send_outlook_email",
    "slack": "send_slack_message",
    "microsoftTeams": "send_teams_message",
    "googleCalendar": "create_calendar_event",
    "notion": "create_notion_page",
    "googleDocs": "create_doc",
}


def normalize_node_type(node_type: str) -> NodeKind:
    """Map an editor type string onto NodeKind. Raises ValueError if unknown."""
    if node_type in NODE_TYPE_ALIASES:
        return NODE_TYPE_ALIASES[node_type]
    lowered = node_type.lower()
    for alias, kind in NODE_TYPE_ALIASES.items():
        if alias.lower() == lowered:
            return kind
    raise ValueError(f"Unknown node type '{node_type}'")


class FlowNode(BaseModel):
    """
    A single node in a flow graph.

    ``config`` is opaque to the graph layer; only the executor for the node's
    kind interprets it. Editor payloads put it under ``data``.
    """

    id: str
    type: str
    kind: NodeKind
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None  # informational only

    model_config = ConfigDict(extra="allow", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "config" not in data and "data" in data:
            data["config"] = data.pop("data") or {}
        if "kind" not in data:
            node_type = data.get("type")
            if not isinstance(node_type, str) or not node_type:
                raise ValueError(f"Node '{data.get('id')}' has no type")
            data["kind"] = normalize_node_type(node_type)
        elif "type" not in data:
            data["type"] = str(data["kind"])
        return data

    @property
    def label(self) -> str:
        return str(self.config.get("label") or self.id)

    @property
    def critical(self) -> bool:
        """Failures abort dependants unless config.critical is explicitly false."""
        return self.config.get("critical", True) is not False

    @property
    def action(self) -> str | None:
        return self.config.get("action") or DEFAULT_ACTION_FOR_TYPE.get(self.type)


# ---------------------------------------------------------------------------
# Node outputs
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class TriggerResult(BaseModel):
    type: Literal["trigger-result"] = "trigger-result"
    payload: dict[str, Any] = Field(default_factory=dict)

    def as_text(self) -> str:
        return str(self.payload.get("message", ""))


class AIResponse(BaseModel):
    type: Literal["ai-response"] = "ai-response"
    content: str
    model: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)

    def as_text(self) -> str:
        return self.content


class ActionResult(BaseModel):
    type: Literal["action-result"] = "action-result"
    action: str = ""
    success: bool
    data: Any = None
    error: str | None = None

    def as_text(self) -> str:
        if not self.success:
            return self.error or ""
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, default=str)


class BranchResult(BaseModel):
    type: Literal["branch-result"] = "branch-result"
    selected_handle: str | None = Field(default=None, alias="selectedHandle")

    model_config = ConfigDict(populate_by_name=True)

    def as_text(self) -> str:
        return self.selected_handle or ""


NodeOutput = Annotated[
    TriggerResult | AIResponse | ActionResult | BranchResult,
    Field(discriminator="type"),
]

_node_output_adapter: TypeAdapter[Any] = TypeAdapter(NodeOutput)


def parse_node_output(data: Any) -> TriggerResult | AIResponse | ActionResult | BranchResult:
    """Parse a serialised NodeOutput. Raises pydantic.ValidationError."""
    if isinstance(data, TriggerResult | AIResponse | ActionResult | BranchResult):
        return data
    return _node_output_adapter.validate_python(data)


def dump_node_output(output: Any) -> dict[str, Any]:
    return output.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Results and context
# ---------------------------------------------------------------------------


class NodeStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


@dataclass
class NodeResult:
    """Outcome of one executor invocation."""

    status: NodeStatus
    output: TriggerResult | AIResponse | ActionResult | BranchResult | None = None
    error: NodeExecutionError | None = None
    verdict: EvalVerdict | None = None
    confirmation: ConfirmationRequest | None = None
    tokens_used: int = 0
    latency_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == NodeStatus.COMPLETED

    @classmethod
    def completed(cls, output: Any, tokens_used: int = 0) -> NodeResult:
        return cls(status=NodeStatus.COMPLETED, output=output, tokens_used=tokens_used)

    @classmethod
    def failed(cls, error: NodeExecutionError, output: Any = None) -> NodeResult:
        return cls(status=NodeStatus.FAILED, error=error, output=output)


@dataclass
class ConversationTurn:
    role: str  # "user" | "assistant"
    content: str


@dataclass
class MemoryEntry:
    """Durable agent memory. Read-only during a run."""

    key: str
    value: str
    category: str = "general"


@dataclass
class ExecutionContext:
    """
    State threaded through one run.

    Exclusively owned by a single in-flight run; never shared between runs.
    """

    run_id: str
    user_message: str
    agent: AgentSpec | None = None
    conversation_id: str | None = None
    history: list[ConversationTurn] = field(default_factory=list)
    memories: list[MemoryEntry] = field(default_factory=list)
    summary: str | None = None
    node_outputs: dict[str, Any] = field(default_factory=dict)

    # Approval resume: per-node argument overrides and a one-shot gate bypass
    args_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    gate_bypass: GateBypass | None = None

    def set_output(self, node_id: str, output: Any) -> None:
        # Re-insert so a loop iteration becomes the most recent output
        self.node_outputs.pop(node_id, None)
        self.node_outputs[node_id] = output

    def get_output(self, node_id: str) -> Any | None:
        return self.node_outputs.get(node_id)

    def last_output(self) -> Any | None:
        """Most recently written output (dicts keep insertion order)."""
        if not self.node_outputs:
            return None
        return next(reversed(self.node_outputs.values()))

    def last_output_text(self) -> str:
        output = self.last_output()
        if output is None:
            return self.user_message
        return output.as_text()

    def outputs_as_dict(self) -> dict[str, Any]:
        return {node_id: dump_node_output(o) for node_id, o in self.node_outputs.items()}

    def memory_map(self) -> dict[str, str]:
        return {m.key: m.value for m in self.memories}

    def consume_bypass(self, node_id: str, args: dict[str, Any]) -> bool:
        """Use the one-shot gate bypass if it matches this node and payload exactly."""
        if self.gate_bypass is None or not self.gate_bypass.matches(node_id, args):
            return False
        self.gate_bypass = None
        return True


class NodeExecutor(Protocol):
    """Runs one node kind."""

    async def execute(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult: ...
