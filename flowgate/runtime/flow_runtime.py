"""
Flow Runtime - the invocation surface for flow runs.

Each call to execute() starts one run in its own asyncio task with its own
ExecutionContext and returns a RunHandle:

    handle = await runtime.execute(graph, "Where is my order?", conversation_id="c1")
    async for event in handle:
        print(event.to_json())
    summary = await handle.summary()

Runs never share a context, so any number may be in flight at once. The
conversation store is read once before a run starts; the runtime writes
nothing back. Storing the reply and any pending confirmations is up to the
caller, using the RunSummary.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any, Protocol

from flowgate.config import EngineConfig
from flowgate.errors import FlowError, GraphInputError
from flowgate.eval.gate import EvaluationGate
from flowgate.graph.agent import AgentSpec
from flowgate.graph.edge import FlowGraph
from flowgate.graph.executor import FlowExecutor, RunStatus, RunSummary
from flowgate.graph.hitl import ApprovalDecision, ApprovalResponse, ConfirmationRequest
from flowgate.graph.node import ConversationTurn, ExecutionContext, MemoryEntry
from flowgate.graph.resume import RetrySeed, resume_after_decision
from flowgate.integrations.adapters import AdapterRegistry
from flowgate.llm.registry import ProviderRegistry
from flowgate.runtime.event_bus import (
    EventBus,
    EventType,
    LifecycleEvent,
    ListSink,
    QueueSink,
    RunEmitter,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Read-only view of the persistence layer."""

    async def load_history(self, conversation_id: str, limit: int) -> list[ConversationTurn]: ...

    async def load_summary(self, conversation_id: str) -> str | None: ...

    async def load_memories(self, agent_id: str) -> list[MemoryEntry]: ...


class InMemoryConversationStore:
    """ConversationStore backed by dicts. For tests and the CLI."""

    def __init__(self) -> None:
        self.turns: dict[str, list[ConversationTurn]] = {}
        self.summaries: dict[str, str] = {}
        self.memories: dict[str, list[MemoryEntry]] = {}

    def add_turn(self, conversation_id: str, role: str, content: str) -> None:
        self.turns.setdefault(conversation_id, []).append(ConversationTurn(role, content))

    def add_memory(self, agent_id: str, key: str, value: str, category: str = "general") -> None:
        self.memories.setdefault(agent_id, []).append(MemoryEntry(key, value, category))

    async def load_history(self, conversation_id: str, limit: int) -> list[ConversationTurn]:
        return list(self.turns.get(conversation_id, [])[-limit:])

    async def load_summary(self, conversation_id: str) -> str | None:
        return self.summaries.get(conversation_id)

    async def load_memories(self, agent_id: str) -> list[MemoryEntry]:
        return list(self.memories.get(agent_id, []))


class RunHandle:
    """
    A run in flight.

    Iterate it for lifecycle events (one consumer), await summary() for the
    result, call cancel() to stop the run at the next node boundary.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.channel = QueueSink()
        self.recorder = ListSink()
        self.cancel_event = asyncio.Event()
        self._task: asyncio.Task[RunSummary] | None = None

    def __aiter__(self) -> AsyncIterator[LifecycleEvent]:
        return self.channel.__aiter__()

    @property
    def events(self) -> list[LifecycleEvent]:
        """Every event emitted so far, in order."""
        return list(self.recorder.events)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        """Stop before the next node starts. A node already running finishes."""
        if not self.cancel_event.is_set():
            logger.info(f"Cancellation requested for run {self.run_id}")
            self.cancel_event.set()

    async def summary(self) -> RunSummary:
        if self._task is None:
            raise FlowError(f"Run {self.run_id} has not been started")
        return await self._task

    async def collect(self) -> tuple[list[LifecycleEvent], RunSummary]:
        """Wait for the run and return all its events with the summary."""
        summary = await self.summary()
        return self.events, summary


class FlowRuntime:
    """
    Runs flows concurrently.

    Example:
        runtime = FlowRuntime(
            registry=ProviderRegistry.with_litellm("anthropic/claude-haiku-4-5-20251001"),
            adapters=adapters,
            store=store,
        )
        handle = await runtime.execute(graph_dict, "hello", agent=agent)
        events, summary = await handle.collect()
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        gate: EvaluationGate | None = None,
        adapters: AdapterRegistry | None = None,
        store: ConversationStore | None = None,
        engine_config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        max_concurrent: int = 10,
        executor: FlowExecutor | None = None,
    ):
        self.engine_config = engine_config or EngineConfig()
        self.executor = executor or FlowExecutor(
            registry=registry,
            gate=gate,
            adapters=adapters,
            engine_config=self.engine_config,
        )
        self.store = store
        self.event_bus = event_bus
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._runs: dict[str, RunHandle] = {}

    # === INVOCATION ===

    async def execute(
        self,
        graph: FlowGraph | dict[str, Any],
        user_message: str,
        conversation_id: str | None = None,
        retry_from_node_id: str | None = None,
        previous_node_outputs: dict[str, Any] | None = None,
        agent: AgentSpec | None = None,
        failed_nodes: set[str] | None = None,
        run_id: str | None = None,
    ) -> RunHandle:
        """
        Start a run and return its handle.

        Non-blocking - the run executes in the background. Input errors
        (bad graph, incomplete retry seed) are reported as the run's single
        flow-error event rather than raised here.
        """
        seed_input = None
        if retry_from_node_id is not None:
            seed_input = (retry_from_node_id, previous_node_outputs or {}, failed_nodes)
        return self._start(
            graph, user_message, conversation_id, agent, run_id, seed_input=seed_input
        )

    async def resume_after_decision(
        self,
        graph: FlowGraph | dict[str, Any],
        request: ConfirmationRequest,
        decision: ApprovalResponse | ApprovalDecision | str,
        previous_node_outputs: dict[str, Any],
        edited_args: dict[str, Any] | None = None,
        agent: AgentSpec | None = None,
        user_message: str = "",
        failed_nodes: set[str] | None = None,
    ) -> RunHandle:
        """
        Continue a run that paused for approval.

        approved / approved_with_edits re-run the paused node with a one-shot
        gate bypass; rejected skips it and its sole dependants.
        """
        seed: RetrySeed | GraphInputError
        try:
            seed = resume_after_decision(
                request, decision, previous_node_outputs, edited_args, failed_nodes
            )
        except GraphInputError as e:
            seed = e
        except ValueError as e:
            # Missing edits for approved_with_edits, or an unknown decision
            seed = GraphInputError(str(e))
        return self._start(
            graph, user_message, request.conversation_id, agent, None, seed=seed
        )

    def _start(
        self,
        graph: FlowGraph | dict[str, Any],
        user_message: str,
        conversation_id: str | None,
        agent: AgentSpec | None,
        run_id: str | None,
        seed: RetrySeed | GraphInputError | None = None,
        seed_input: tuple[str, dict[str, Any], set[str] | None] | None = None,
    ) -> RunHandle:
        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        handle = RunHandle(run_id)
        self._runs[run_id] = handle
        handle._task = asyncio.create_task(
            self._run(handle, graph, user_message, conversation_id, agent, seed, seed_input)
        )
        logger.debug(f"Queued run {run_id}")
        return handle

    async def _run(
        self,
        handle: RunHandle,
        graph_input: FlowGraph | dict[str, Any],
        user_message: str,
        conversation_id: str | None,
        agent: AgentSpec | None,
        seed: RetrySeed | GraphInputError | None,
        seed_input: tuple[str, dict[str, Any], set[str] | None] | None,
    ) -> RunSummary:
        sinks: list[Any] = [handle.recorder, handle.channel]
        if self.event_bus is not None:
            sinks.append(self.event_bus)
        emitter = RunEmitter(handle.run_id, sinks)

        async with self._semaphore:
            try:
                if isinstance(seed, GraphInputError):
                    raise seed
                graph = (
                    graph_input
                    if isinstance(graph_input, FlowGraph)
                    else FlowGraph.from_dict(graph_input)
                )
                if seed_input is not None:
                    node_id, outputs, failed = seed_input
                    seed = RetrySeed.from_raw(node_id, outputs, failed_nodes=set(failed or ()))
                ctx = await self._build_context(
                    handle.run_id, user_message, conversation_id, agent
                )
            except GraphInputError as e:
                return await self._fail_before_start(
                    handle, emitter, e, RunStatus.INVALID_INPUT
                )
            except Exception as e:
                logger.error(f"Conversation store failed for run {handle.run_id}: {e}")
                error = FlowError(f"Conversation store failed: {e}")
                error.__cause__ = e
                return await self._fail_before_start(handle, emitter, error, RunStatus.FAILED)

            try:
                return await self.executor.run(
                    graph, ctx, emitter, seed=seed, cancel_event=handle.cancel_event
                )
            finally:
                handle.channel.close()

    async def _build_context(
        self,
        run_id: str,
        user_message: str,
        conversation_id: str | None,
        agent: AgentSpec | None,
    ) -> ExecutionContext:
        ctx = ExecutionContext(
            run_id=run_id,
            user_message=user_message,
            agent=agent,
            conversation_id=conversation_id,
        )
        if self.store is None:
            return ctx
        if conversation_id:
            ctx.history = await self.store.load_history(
                conversation_id, self.engine_config.history_window
            )
            ctx.summary = await self.store.load_summary(conversation_id)
        if agent is not None:
            ctx.memories = await self.store.load_memories(agent.id)
        return ctx

    async def _fail_before_start(
        self,
        handle: RunHandle,
        emitter: RunEmitter,
        error: FlowError,
        status: RunStatus,
    ) -> RunSummary:
        logger.error(f"❌ Run {handle.run_id} rejected: {error}")
        await emitter.emit(EventType.FLOW_ERROR, status=status.value, error=error.to_dict())
        handle.channel.close()
        return RunSummary(run_id=handle.run_id, status=status, error=error)

    # === MONITORING ===

    def get_handle(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a run. False if unknown or finished."""
        handle = self._runs.get(run_id)
        if handle is None or handle.done:
            return False
        handle.cancel()
        return True

    def get_active_count(self) -> int:
        return len([h for h in self._runs.values() if not h.done])

    def prune(self) -> None:
        """Forget finished runs."""
        self._runs = {k: h for k, h in self._runs.items() if not h.done}
