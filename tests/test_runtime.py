"""
Tests for FlowRuntime: streaming, concurrency, context loading and cancel.
"""

import asyncio

import pytest

from flowgate.config import EngineConfig
from flowgate.errors import FlowError
from flowgate.graph.agent import AgentSpec
from flowgate.graph.executor import FlowExecutor, RunStatus
from flowgate.graph.node import AIResponse, NodeResult
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.registry import ProviderRegistry
from flowgate.runtime.event_bus import EventBus, EventType
from flowgate.runtime.flow_runtime import FlowRuntime, InMemoryConversationStore, RunHandle

from helpers import GOOD_BODY, QUERY, email_flow, make_executor


def echo(messages):
    """First line of the user message, so every run's reply names its input."""
    return "echo: " + messages[0]["content"].splitlines()[0]


def chat_flow():
    return {
        "nodes": [
            {"id": "trigger", "type": "messageReceived"},
            {"id": "reply", "type": "chatAgent", "data": {"prompt": "Reply to the user"}},
        ],
        "edges": [{"id": "e1", "source": "trigger", "target": "reply"}],
    }


class GatedNode:
    """Holds the run inside a node until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, node, ctx):
        self.started.set()
        await self.release.wait()
        return NodeResult.completed(AIResponse(content="slow"))


class FailingStore(InMemoryConversationStore):
    async def load_history(self, conversation_id, limit):
        raise RuntimeError("database unavailable")


class TestStreaming:
    @pytest.mark.asyncio
    async def test_iterate_events_until_terminal(self):
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor)

        handle = await runtime.execute(chat_flow(), QUERY, run_id="run-1")
        streamed = [event async for event in handle]
        summary = await handle.summary()

        assert [e.type.value for e in streamed] == [
            "node-start",
            "node-complete",
            "node-start",
            "node-complete",
            "flow-complete",
        ]
        assert all(e.run_id == "run-1" for e in streamed)
        assert streamed == handle.events
        assert summary.final_content == GOOD_BODY

    @pytest.mark.asyncio
    async def test_generated_run_ids_are_unique(self):
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor)

        first = await runtime.execute(chat_flow(), QUERY)
        second = await runtime.execute(chat_flow(), QUERY)
        await asyncio.gather(first.summary(), second.summary())

        assert first.run_id != second.run_id
        assert first.run_id.startswith("run_")

    @pytest.mark.asyncio
    async def test_events_reach_the_bus(self):
        bus = EventBus()
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor, event_bus=bus)

        handle = await runtime.execute(chat_flow(), QUERY, run_id="run-1")
        events, _ = await handle.collect()

        history = bus.get_history(run_id="run-1")
        assert [e.sequence for e in reversed(history)] == [e.sequence for e in events]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_share_state(self):
        llm = MockLLMProvider(echo)
        runtime = FlowRuntime(registry=ProviderRegistry(default=llm))

        handles = [
            await runtime.execute(chat_flow(), f"message {i}", run_id=f"run-{i}")
            for i in range(5)
        ]
        results = await asyncio.gather(*(h.collect() for h in handles))

        for i, (events, summary) in enumerate(results):
            assert summary.final_content == f"echo: User message: message {i}"
            assert [e.sequence for e in events] == list(range(1, len(events) + 1))
            assert {e.run_id for e in events} == {f"run-{i}"}
            assert summary.node_outputs["trigger"].payload["message"] == f"message {i}"

    @pytest.mark.asyncio
    async def test_active_count_and_prune(self):
        gated = GatedNode()
        executor, _, _ = make_executor()
        executor.register_node("reply", gated)
        runtime = FlowRuntime(executor=executor)

        handle = await runtime.execute(chat_flow(), QUERY, run_id="run-1")
        await gated.started.wait()
        assert runtime.get_active_count() == 1

        gated.release.set()
        await handle.summary()
        assert runtime.get_active_count() == 0
        assert runtime.get_handle("run-1") is handle

        runtime.prune()
        assert runtime.get_handle("run-1") is None


class TestContextLoading:
    @pytest.mark.asyncio
    async def test_store_context_reaches_the_model(self):
        store = InMemoryConversationStore()
        for i in range(3):
            store.add_turn("c1", "user", f"turn {i}")
        store.summaries["c1"] = "Customer ordered boots last week."
        store.add_memory("a1", "tier", "gold")
        agent = AgentSpec(id="a1", system_prompt="You are the support agent.")

        executor, llm, _ = make_executor()
        runtime = FlowRuntime(
            executor=executor, store=store, engine_config=EngineConfig(history_window=2)
        )
        handle = await runtime.execute(chat_flow(), QUERY, conversation_id="c1", agent=agent)
        await handle.summary()

        call = llm.calls[0]
        content = call["messages"][0]["content"]
        assert call["system"] == "You are the support agent."
        assert content.startswith(f"User message: {QUERY}")
        assert "Conversation summary:\nCustomer ordered boots last week." in content
        assert "user: turn 2" in content
        assert "turn 0" not in content
        assert "- tier: gold" in content
        assert content.endswith("Task: Reply to the user")

    @pytest.mark.asyncio
    async def test_store_is_not_written(self):
        store = InMemoryConversationStore()
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor, store=store)

        handle = await runtime.execute(chat_flow(), QUERY, conversation_id="c1")
        await handle.summary()

        assert store.turns == {}

    @pytest.mark.asyncio
    async def test_store_failure_ends_run(self):
        executor, llm, _ = make_executor()
        runtime = FlowRuntime(executor=executor, store=FailingStore())

        handle = await runtime.execute(chat_flow(), QUERY, conversation_id="c1")
        events, summary = await handle.collect()

        assert summary.status == RunStatus.FAILED
        assert [e.type for e in events] == [EventType.FLOW_ERROR]
        assert "database unavailable" in events[0].data["error"]["message"]
        assert llm.calls == []


class TestCancelAndInput:
    @pytest.mark.asyncio
    async def test_cancel_between_nodes(self):
        gated = GatedNode()
        executor, _, adapter = make_executor(judge_score=100)
        executor.register_node("draft", gated)
        runtime = FlowRuntime(executor=executor)

        handle = await runtime.execute(email_flow(), QUERY, run_id="run-1")
        await gated.started.wait()
        assert runtime.cancel("run-1")
        gated.release.set()
        events, summary = await handle.collect()

        assert summary.status == RunStatus.CANCELLED
        assert summary.path == ["trigger", "draft"]
        assert events[-1].data["status"] == "cancelled"
        assert adapter.calls == []
        assert not runtime.cancel("run-1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self):
        runtime = FlowRuntime(executor=FlowExecutor())
        assert not runtime.cancel("nope")

    @pytest.mark.asyncio
    async def test_summary_of_unstarted_handle(self):
        with pytest.raises(FlowError, match="run-9 has not been started"):
            await RunHandle("run-9").summary()

    @pytest.mark.asyncio
    async def test_malformed_graph_is_single_flow_error(self):
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor)

        handle = await runtime.execute({"nodes": [{"id": "x", "type": "hologram"}]}, QUERY)
        streamed = [event async for event in handle]
        summary = await handle.summary()

        assert [e.type for e in streamed] == [EventType.FLOW_ERROR]
        assert streamed[0].data["status"] == "invalid_input"
        assert "Unknown node type 'hologram'" in streamed[0].data["error"]["message"]
        assert summary.status == RunStatus.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_retry_with_serialised_outputs(self):
        executor, llm, adapter = make_executor(judge_score=92)
        runtime = FlowRuntime(executor=executor)
        previous = {
            "trigger": {"type": "trigger-result", "payload": {"message": QUERY}},
            "draft": {"type": "ai-response", "content": GOOD_BODY},
        }

        handle = await runtime.execute(
            email_flow(), QUERY, retry_from_node_id="send", previous_node_outputs=previous
        )
        _, summary = await handle.collect()

        assert summary.status == RunStatus.COMPLETED
        assert summary.reused == ["trigger", "draft"]
        assert adapter.calls[0][1]["body"] == GOOD_BODY
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_retry_with_missing_output(self):
        executor, _, _ = make_executor()
        runtime = FlowRuntime(executor=executor)

        handle = await runtime.execute(
            email_flow(), QUERY, retry_from_node_id="send", previous_node_outputs={}
        )
        events, summary = await handle.collect()

        assert summary.status == RunStatus.INVALID_INPUT
        assert events[-1].data["error"]["errors"][0].startswith("Cannot retry from 'send'")
