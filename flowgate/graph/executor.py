"""
Flow Executor - Runs flow graphs.

The executor:
1. Validates the graph and (on resume) applies the replay plan
2. Pops ready nodes in FIFO order and runs the executor for their kind
3. Resolves outgoing edges: active, or inactive for unselected branches
4. Skips nodes whose required edges all resolved inactive
5. Emits a lifecycle event for every transition and exactly one terminal event

A node's *required* edges are its incoming edges that do not close a cycle.
It becomes ready once all of them are resolved and at least one is active.
An active edge that closes a cycle re-enqueues its target (loop iteration);
the step budget bounds such loops.

Failures stay local to the failed node's dependency subgraph: dependants with
no other live path are skipped, sibling branches keep running, and the run
ends with one flow-error naming the first critical failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowgate.config import EngineConfig
from flowgate.errors import (
    BudgetExceededError,
    CancellationError,
    FlowError,
    GateBlockError,
    GraphInputError,
    NodeExecutionError,
)
from flowgate.eval.gate import EvalVerdict, EvaluationGate
from flowgate.graph.action_node import ActionNode
from flowgate.graph.branch_node import BranchNode
from flowgate.graph.edge import FlowEdge, FlowGraph
from flowgate.graph.hitl import ConfirmationRequest
from flowgate.graph.llm_node import LLMNode
from flowgate.graph.node import (
    ExecutionContext,
    FlowNode,
    NodeExecutor,
    NodeKind,
    NodeResult,
    NodeStatus,
    dump_node_output,
)
from flowgate.graph.resume import RetrySeed, plan_replay
from flowgate.graph.trigger_node import TriggerNode
from flowgate.integrations.adapters import AdapterRegistry
from flowgate.llm.registry import ProviderRegistry
from flowgate.observability import set_trace_context
from flowgate.runtime.event_bus import EventType, RunEmitter


class RunStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    BUDGET_EXCEEDED = "budget_exceeded"
    INVALID_INPUT = "invalid_input"


class SkipReason(StrEnum):
    BRANCH_NOT_SELECTED = "branch_not_selected"
    UPSTREAM_FAILURE = "upstream_failure"
    REJECTED = "rejected"
    PREVIOUSLY_FAILED = "previously_failed"


@dataclass
class RunSummary:
    """Result of one run, handed to the caller for storage."""

    run_id: str
    status: RunStatus
    node_outputs: dict[str, Any] = field(default_factory=dict)
    path: list[str] = field(default_factory=list)  # Node IDs executed, in order
    reused: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    failures: dict[str, dict[str, Any]] = field(default_factory=dict)  # {node_id: error dict}
    unresolved: list[str] = field(default_factory=list)  # Blocked or awaiting approval
    pending_confirmations: list[ConfirmationRequest] = field(default_factory=list)
    verdicts: dict[str, EvalVerdict] = field(default_factory=dict)
    steps_executed: int = 0
    total_tokens: int = 0
    total_latency_ms: int = 0
    error: FlowError | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def final_content(self) -> str | None:
        """Last language-model response, for the caller to store as the reply."""
        for output in reversed(list(self.node_outputs.values())):
            if getattr(output, "type", None) == "ai-response":
                return output.content
        return None

    @property
    def non_critical_failures(self) -> set[str]:
        return {n for n, err in self.failures.items() if not err.get("fatal", True)}

    def to_retry_seed(self, node_id: str) -> RetrySeed:
        """Seed for retrying this run from ``node_id``."""
        return RetrySeed(
            retry_from_node_id=node_id,
            previous_node_outputs=dict(self.node_outputs),
            failed_nodes=self.non_critical_failures - {node_id},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "node_outputs": {k: dump_node_output(v) for k, v in self.node_outputs.items()},
            "path": list(self.path),
            "reused": list(self.reused),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "failures": dict(self.failures),
            "unresolved": list(self.unresolved),
            "pending_confirmations": [c.to_dict() for c in self.pending_confirmations],
            "verdicts": {k: v.model_dump(mode="json") for k, v in self.verdicts.items()},
            "steps_executed": self.steps_executed,
            "total_tokens": self.total_tokens,
            "total_latency_ms": self.total_latency_ms,
            "error": self.error.to_dict() if self.error else None,
            "final_content": self.final_content,
        }


class _RunState:
    """Traversal bookkeeping for one run."""

    def __init__(self, graph: FlowGraph, summary: RunSummary):
        self.graph = graph
        self.summary = summary
        self.back_edges = graph.back_edges()
        self.required: dict[str, list[str]] = {
            n: [e.id for e in graph.get_incoming_edges(n) if e.id not in self.back_edges]
            for n in graph.node_ids()
        }
        self.edge_state: dict[str, bool] = {}
        self.queue: deque[str] = deque()
        self.skipped: set[str] = set()
        self.reusable: dict[str, Any] = {}
        self.first_failure: NodeExecutionError | None = None
        self.started = time.monotonic()

    def enqueue(self, node_id: str) -> None:
        if node_id in self.queue:
            return
        self.queue.append(node_id)
        # A loop exit skipped on an earlier iteration can still run later
        if node_id in self.skipped:
            self.skipped.discard(node_id)
            self.summary.skipped.remove(node_id)


class FlowExecutor:
    """
    Executes flow graphs.

    Example:
        executor = FlowExecutor(
            registry=ProviderRegistry(default=MockLLMProvider("Hi!")),
            adapters=adapters,
        )
        summary = await executor.run(graph, ExecutionContext(run_id="r1", user_message="hello"))
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        gate: EvaluationGate | None = None,
        adapters: AdapterRegistry | None = None,
        engine_config: EngineConfig | None = None,
        executors: dict[NodeKind, NodeExecutor] | None = None,
        node_registry: dict[str, NodeExecutor] | None = None,
    ):
        """
        Initialize the executor.

        Args:
            registry: Model providers for language-model nodes
            gate: Evaluation gate for side-effecting actions
            adapters: Integration adapters for action nodes
            engine_config: Step and time budgets
            executors: Replacement executors by node kind
            node_registry: Custom executors by node ID
        """
        self.registry = registry or ProviderRegistry()
        self.gate = gate or EvaluationGate()
        self.adapters = adapters or AdapterRegistry()
        self.engine_config = engine_config or EngineConfig()
        self.node_registry = node_registry or {}
        self.logger = logging.getLogger(__name__)

        self.executors: dict[NodeKind, NodeExecutor] = {
            NodeKind.TRIGGER: TriggerNode(),
            NodeKind.LLM: LLMNode(self.registry),
            NodeKind.ACTION: ActionNode(self.gate, self.adapters, self.registry),
            NodeKind.BRANCH: BranchNode(),
        }
        if executors:
            self.executors.update(executors)

    def register_node(self, node_id: str, implementation: NodeExecutor) -> None:
        """Register a custom executor for one node."""
        self.node_registry[node_id] = implementation

    def _step_limit(self, ctx: ExecutionContext, max_steps: int | None) -> int:
        if max_steps is not None:
            return max_steps
        if ctx.agent and ctx.agent.max_steps:
            return ctx.agent.max_steps
        return self.engine_config.max_steps

    async def run(
        self,
        graph: FlowGraph,
        ctx: ExecutionContext,
        emitter: RunEmitter | None = None,
        seed: RetrySeed | None = None,
        cancel_event: asyncio.Event | None = None,
        max_steps: int | None = None,
    ) -> RunSummary:
        """
        Run a graph to its end.

        Never raises for run outcomes; the summary and the terminal event
        report what happened. Only asyncio cancellation of the calling task
        propagates.
        """
        emitter = emitter or RunEmitter(ctx.run_id)
        summary = RunSummary(run_id=ctx.run_id, status=RunStatus.COMPLETED)
        summary.node_outputs = ctx.node_outputs
        set_trace_context(
            run_id=ctx.run_id,
            agent_id=ctx.agent.id if ctx.agent else None,
            conversation_id=ctx.conversation_id,
        )

        try:
            graph.ensure_valid()
            state = _RunState(graph, summary)
            if seed is not None:
                await self._apply_seed(state, ctx, emitter, seed)
            else:
                for entry in graph.entry_nodes():
                    state.enqueue(entry)
        except GraphInputError as e:
            self.logger.error(f"❌ Invalid input: {e}")
            return await self._finish_error(summary, emitter, e, RunStatus.INVALID_INPUT)

        limit = self._step_limit(ctx, max_steps)
        max_duration = self.engine_config.max_duration_seconds
        nodes = {n.id: n for n in graph.nodes}
        self.logger.info(
            f"🚀 Starting run {ctx.run_id}: {len(graph.nodes)} nodes, step budget {limit}"
        )

        while state.queue:
            node_id = state.queue.popleft()
            node = nodes[node_id]

            if node_id in state.reusable:
                await self._reuse(state, ctx, emitter, node_id, state.reusable.pop(node_id))
                continue

            if cancel_event is not None and cancel_event.is_set():
                return await self._finish_error(
                    summary, emitter, CancellationError(), RunStatus.CANCELLED
                )
            if summary.steps_executed >= limit:
                return await self._finish_error(
                    summary, emitter, BudgetExceededError(limit), RunStatus.BUDGET_EXCEEDED
                )
            if max_duration is not None and time.monotonic() - state.started >= max_duration:
                return await self._finish_error(
                    summary,
                    emitter,
                    BudgetExceededError(max_duration, reason="max_duration"),
                    RunStatus.BUDGET_EXCEEDED,
                )

            await self._run_node(state, ctx, emitter, node)

        if cancel_event is not None and cancel_event.is_set():
            return await self._finish_error(
                summary, emitter, CancellationError(), RunStatus.CANCELLED
            )
        return await self._finish(state, emitter)

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def _apply_seed(
        self, state: _RunState, ctx: ExecutionContext, emitter: RunEmitter, seed: RetrySeed
    ) -> None:
        graph = state.graph
        plan = plan_replay(graph, seed)
        target = seed.retry_from_node_id
        self.logger.info(f"🔄 Resuming from: {target}")

        replayed = set(plan.reuse) | set(plan.skip) | set(plan.failed)
        for node_id in graph.topological_order(replayed):
            if node_id in plan.reuse:
                output = seed.previous_node_outputs[node_id]
                ctx.set_output(node_id, output)
                state.summary.reused.append(node_id)
                await emitter.emit(
                    EventType.NODE_REUSED, node_id, output=dump_node_output(output)
                )
            elif node_id in plan.failed:
                await self._mark_skipped(state, emitter, node_id, SkipReason.PREVIOUSLY_FAILED)
            else:
                await self._mark_skipped(state, emitter, node_id, SkipReason.BRANCH_NOT_SELECTED)
        state.edge_state.update(plan.edge_states)

        # Seeded nodes off the retry path are replayed when traversal reaches them
        for node_id, output in seed.previous_node_outputs.items():
            if node_id != target and node_id not in plan.descendants and node_id not in replayed:
                state.reusable[node_id] = output

        if seed.rejected:
            self.logger.info(f"   ⏭ '{target}' rejected, skipping it and its dependants")
            await self._skip(state, emitter, target, SkipReason.REJECTED)
        else:
            if seed.args_override is not None:
                ctx.args_overrides[target] = dict(seed.args_override)
            ctx.gate_bypass = seed.gate_bypass
            state.enqueue(target)

        # Entries and nodes beside the retry path whose inputs are already settled
        entries = set(graph.entry_nodes())
        for node_id in graph.topological_order():
            if node_id == target or node_id in replayed or node_id in plan.descendants:
                continue
            if node_id in entries:
                state.enqueue(node_id)
            elif state.required[node_id]:
                await self._check_ready(state, emitter, node_id, SkipReason.BRANCH_NOT_SELECTED)

    async def _reuse(
        self,
        state: _RunState,
        ctx: ExecutionContext,
        emitter: RunEmitter,
        node_id: str,
        output: Any,
    ) -> None:
        ctx.set_output(node_id, output)
        state.summary.reused.append(node_id)
        self.logger.info(f"   ♻ Reused output of '{node_id}'")
        await emitter.emit(EventType.NODE_REUSED, node_id, output=dump_node_output(output))
        await self._resolve_edges(
            state,
            emitter,
            node_id,
            lambda e: e.is_active_for(output),
            SkipReason.BRANCH_NOT_SELECTED,
        )

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------

    def _get_executor(self, node: FlowNode) -> NodeExecutor:
        if node.id in self.node_registry:
            return self.node_registry[node.id]
        return self.executors[node.kind]

    async def _invoke(self, node: FlowNode, ctx: ExecutionContext) -> NodeResult:
        """Run one executor. Unexpected exceptions become a NodeExecutionError."""
        start = time.monotonic()
        try:
            result = await self._get_executor(node).execute(node, ctx)
        except Exception as e:
            self.logger.error(f"   ✗ Unexpected error in '{node.id}': {e}")
            error = NodeExecutionError(
                f"Unexpected error in node '{node.id}': {e}", node_id=node.id
            )
            error.__cause__ = e
            result = NodeResult.failed(error)
        if not result.latency_ms:
            result.latency_ms = int((time.monotonic() - start) * 1000)
        if result.error is not None and result.error.node_id is None:
            result.error.node_id = node.id
        return result

    async def _run_node(
        self, state: _RunState, ctx: ExecutionContext, emitter: RunEmitter, node: FlowNode
    ) -> None:
        summary = state.summary
        summary.steps_executed += 1
        set_trace_context(node_id=node.id)
        self.logger.info(f"▶ Step {summary.steps_executed}: {node.label} ({node.kind})")
        await emitter.emit(EventType.NODE_START, node.id, kind=node.kind.value, label=node.label)

        result = await self._invoke(node, ctx)
        summary.path.append(node.id)
        summary.total_tokens += result.tokens_used
        summary.total_latency_ms += result.latency_ms
        if result.verdict is not None:
            summary.verdicts[node.id] = result.verdict

        if result.status == NodeStatus.COMPLETED:
            output = result.output
            ctx.set_output(node.id, output)
            self.logger.info(f"   ✓ {node.id} completed")
            await emitter.emit(
                EventType.NODE_COMPLETE,
                node.id,
                output=dump_node_output(output),
                tokens_used=result.tokens_used,
            )
            await self._resolve_edges(
                state,
                emitter,
                node.id,
                lambda e: e.is_active_for(output),
                SkipReason.BRANCH_NOT_SELECTED,
            )

        elif result.status == NodeStatus.FAILED:
            error = result.error or NodeExecutionError("Node failed", node_id=node.id)
            fatal = node.critical
            summary.failed.append(node.id)
            summary.failures[node.id] = {**error.to_dict(), "fatal": fatal}
            self.logger.error(f"   ✗ {node.id} failed: {error}")
            await emitter.emit(
                EventType.NODE_ERROR,
                node.id,
                error=error.to_dict(),
                fatal=fatal,
                retryable=error.retryable,
            )
            if fatal:
                state.first_failure = state.first_failure or error
                await self._resolve_edges(
                    state, emitter, node.id, lambda e: False, SkipReason.UPSTREAM_FAILURE
                )
            else:
                await self._resolve_edges(
                    state, emitter, node.id, lambda e: True, SkipReason.BRANCH_NOT_SELECTED
                )

        elif result.status == NodeStatus.BLOCKED:
            verdict = result.verdict
            summary.unresolved.append(node.id)
            error = verdict.to_error() if verdict else GateBlockError("Blocked by evaluation gate")
            reason = error.message
            self.logger.info(f"   ⛔ {node.id} blocked: {reason}")
            await emitter.emit(
                EventType.NODE_BLOCKED,
                node.id,
                reason=reason,
                error=error.to_dict(),
                verdict=verdict.model_dump(mode="json") if verdict else None,
            )

        elif result.status == NodeStatus.AWAITING_CONFIRMATION:
            request = result.confirmation
            summary.unresolved.append(node.id)
            if request is not None:
                summary.pending_confirmations.append(request)
            self.logger.info(f"   ⏸ {node.id} awaiting confirmation")
            await emitter.emit(
                EventType.NODE_AWAITING_CONFIRMATION,
                node.id,
                confirmation=request.to_dict() if request else None,
            )

    # ------------------------------------------------------------------
    # Edge resolution and skipping
    # ------------------------------------------------------------------

    async def _resolve_edges(
        self,
        state: _RunState,
        emitter: RunEmitter,
        node_id: str,
        is_active: Callable[[FlowEdge], bool],
        reason: SkipReason,
    ) -> None:
        for edge in state.graph.get_outgoing_edges(node_id):
            active = is_active(edge)
            if edge.id in state.back_edges:
                if active:
                    self.logger.info(f"   ↻ Loop back to '{edge.target}'")
                    state.enqueue(edge.target)
                continue
            state.edge_state[edge.id] = active
            await self._check_ready(state, emitter, edge.target, reason)

    async def _check_ready(
        self, state: _RunState, emitter: RunEmitter, node_id: str, reason: SkipReason
    ) -> None:
        required = state.required[node_id]
        if any(edge_id not in state.edge_state for edge_id in required):
            return
        if any(state.edge_state[edge_id] for edge_id in required):
            state.enqueue(node_id)
        else:
            await self._skip(state, emitter, node_id, reason)

    async def _skip(
        self, state: _RunState, emitter: RunEmitter, node_id: str, reason: SkipReason
    ) -> None:
        if node_id in state.skipped:
            return
        await self._mark_skipped(state, emitter, node_id, reason)
        await self._resolve_edges(state, emitter, node_id, lambda e: False, reason)

    async def _mark_skipped(
        self, state: _RunState, emitter: RunEmitter, node_id: str, reason: SkipReason
    ) -> None:
        state.skipped.add(node_id)
        state.summary.skipped.append(node_id)
        self.logger.info(f"   ⏭ Skipped '{node_id}' ({reason})")
        await emitter.emit(EventType.NODE_SKIPPED, node_id, reason=reason.value)

    # ------------------------------------------------------------------
    # Terminal events
    # ------------------------------------------------------------------

    async def _finish(self, state: _RunState, emitter: RunEmitter) -> RunSummary:
        summary = state.summary
        if state.first_failure is not None:
            return await self._finish_error(
                summary, emitter, state.first_failure, RunStatus.FAILED
            )

        if summary.pending_confirmations:
            summary.status = RunStatus.AWAITING_CONFIRMATION
        elif summary.unresolved:
            summary.status = RunStatus.BLOCKED
        else:
            summary.status = RunStatus.COMPLETED

        self.logger.info(f"✓ Run {summary.run_id} finished: {summary.status}")
        self.logger.info(f"   Steps: {summary.steps_executed}")
        self.logger.info(f"   Path: {' → '.join(summary.path)}")
        self.logger.info(f"   Total tokens: {summary.total_tokens}")
        await emitter.emit(
            EventType.FLOW_COMPLETE,
            status=summary.status.value,
            steps_executed=summary.steps_executed,
            total_tokens=summary.total_tokens,
            unresolved=list(summary.unresolved),
            final_content=summary.final_content,
        )
        return summary

    async def _finish_error(
        self, summary: RunSummary, emitter: RunEmitter, error: FlowError, status: RunStatus
    ) -> RunSummary:
        summary.status = status
        summary.error = error
        self.logger.error(f"❌ Run {summary.run_id} ended with {error.kind}: {error}")
        await emitter.emit(
            EventType.FLOW_ERROR,
            getattr(error, "node_id", None),
            status=status.value,
            error=error.to_dict(),
        )
        return summary
