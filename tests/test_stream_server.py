"""
Tests for StreamServer: SSE streaming, confirmations, cancel and signatures.
"""

import asyncio
import hashlib
import hmac as hmac_mod
import json

import aiohttp
import pytest

from flowgate.config import ServerConfig
from flowgate.graph.edge import FlowGraph
from flowgate.graph.node import AIResponse, NodeResult
from flowgate.runtime.flow_runtime import FlowRuntime
from flowgate.runtime.stream_server import StreamServer

from helpers import GOOD_BODY, QUERY, email_flow, make_executor


def _make_server(judge_score: int | None = None, secret: str | None = None):
    """StreamServer on an OS-assigned port, plus the recording adapter behind it."""
    executor, _, adapter = make_executor(judge_score=judge_score)
    runtime = FlowRuntime(executor=executor)
    server = StreamServer(runtime, ServerConfig(host="127.0.0.1", port=0), secret=secret)
    return server, executor, adapter


def _base_url(server: StreamServer) -> str:
    return f"http://127.0.0.1:{server.port}"


async def _read_events(resp: aiohttp.ClientResponse) -> list[dict]:
    text = await resp.text()
    return [
        json.loads(frame[len("data: ") :])
        for frame in text.split("\n\n")
        if frame.startswith("data: ")
    ]


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


class GatedNode:
    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.run_id = None

    async def execute(self, node, ctx):
        self.run_id = ctx.run_id
        self.started.set()
        await self.release.wait()
        return NodeResult.completed(AIResponse(content=GOOD_BODY))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self):
        server, _, _ = _make_server()

        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_health(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"{_base_url(server)}/health") as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "ok", "active_runs": 0}
        finally:
            await server.stop()


class TestExecute:
    @pytest.mark.asyncio
    async def test_streams_events_as_sse(self):
        server, _, adapter = _make_server(judge_score=95)
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"graph": email_flow(), "message": QUERY},
                ) as resp:
                    assert resp.status == 200
                    assert resp.headers["Content-Type"].startswith("text/event-stream")
                    run_id = resp.headers["X-Run-Id"]
                    events = await _read_events(resp)

            assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
            assert {e["run_id"] for e in events} == {run_id}
            assert events[-1]["type"] == "flow-complete"
            assert events[-1]["status"] == "completed"
            assert len(adapter.calls) == 1
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_registered_flow(self):
        server, _, _ = _make_server()
        server.register_flow(
            "chat",
            FlowGraph.from_dict(
                {
                    "nodes": [{"id": "t", "type": "trigger"}, {"id": "reply", "type": "llm"}],
                    "edges": [{"id": "e1", "source": "t", "target": "reply"}],
                }
            ),
        )
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"flow_id": "chat", "message": QUERY},
                ) as resp:
                    events = await _read_events(resp)

            assert events[-1]["final_content"] == GOOD_BODY
        finally:
            await server.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,error",
        [
            ({"flow_id": "missing", "message": "hi"}, "Unknown flow 'missing'"),
            ({"message": "hi"}, "needs a 'graph' object"),
        ],
    )
    async def test_bad_flow_reference(self, body, error):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{_base_url(server)}/flows/execute", json=body) as resp:
                    assert resp.status == 400
                    assert error in (await resp.json())["error"]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute", data=b"not json"
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_invalid_graph_streams_flow_error(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"graph": {"nodes": [], "edges": []}, "message": "hi"},
                ) as resp:
                    events = await _read_events(resp)

            assert [e["type"] for e in events] == ["flow-error"]
            assert events[0]["status"] == "invalid_input"
        finally:
            await server.stop()


class TestConfirm:
    @pytest.mark.asyncio
    async def test_pause_then_approve(self):
        server, _, adapter = _make_server(judge_score=70)
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"graph": email_flow(), "message": QUERY},
                ) as resp:
                    run_id = resp.headers["X-Run-Id"]
                    events = await _read_events(resp)

                assert events[-1]["status"] == "awaiting_confirmation"
                request_id = f"{run_id}:send"
                assert list(server.pending) == [request_id]
                assert adapter.calls == []

                async with session.post(
                    f"{_base_url(server)}/flows/confirm",
                    json={"request_id": request_id, "decision": "approved"},
                ) as resp:
                    resumed = await _read_events(resp)

            assert [e["type"] for e in resumed[:2]] == ["node-reused", "node-reused"]
            assert resumed[-1]["status"] == "completed"
            assert adapter.calls[0][1]["body"] == GOOD_BODY
            assert server.pending == {}
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_confirm_from_stored_request(self):
        server, _, adapter = _make_server(judge_score=70)
        await server.start()
        request = {
            "run_id": "run-9",
            "node_id": "send",
            "action": "send_email",
            "args": {"to": "sam@example.com", "subject": "Your order", "body": GOOD_BODY},
        }
        previous = {
            "trigger": {"type": "trigger-result", "payload": {"message": QUERY}},
            "draft": {"type": "ai-response", "content": GOOD_BODY},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/confirm",
                    json={
                        "request_id": "run-9:send",
                        "decision": "approved_with_edits",
                        "edited_args": {**request["args"], "subject": "Shipped"},
                        "graph": email_flow(),
                        "request": request,
                        "previous_node_outputs": previous,
                    },
                ) as resp:
                    events = await _read_events(resp)

            assert events[-1]["status"] == "completed"
            assert adapter.calls[0][1]["subject"] == "Shipped"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_bad_decision_keeps_confirmation_pending(self):
        server, _, adapter = _make_server(judge_score=70)
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"graph": email_flow(), "message": QUERY},
                ) as resp:
                    request_id = f"{resp.headers['X-Run-Id']}:send"
                    await _read_events(resp)

                for body in (
                    {"request_id": request_id, "decision": "aproved"},
                    {"request_id": request_id, "decision": "approved_with_edits"},
                ):
                    async with session.post(
                        f"{_base_url(server)}/flows/confirm", json=body
                    ) as resp:
                        assert resp.status == 400
                    assert list(server.pending) == [request_id]

                async with session.post(
                    f"{_base_url(server)}/flows/confirm",
                    json={"request_id": request_id, "decision": "approved"},
                ) as resp:
                    assert resp.status == 200
                    events = await _read_events(resp)

            assert events[-1]["status"] == "completed"
            assert len(adapter.calls) == 1
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_missing_decision(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/confirm", json={"request_id": "r:n"}
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unknown_confirmation(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/confirm",
                    json={"request_id": "r:n", "decision": "approved"},
                ) as resp:
                    assert resp.status == 404
        finally:
            await server.stop()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_flow(self):
        server, executor, adapter = _make_server(judge_score=95)
        gated = GatedNode()
        executor.register_node("draft", gated)
        await server.start()

        async def execute(session):
            async with session.post(
                f"{_base_url(server)}/flows/execute",
                json={"graph": email_flow(), "message": QUERY},
            ) as resp:
                return await _read_events(resp)

        try:
            async with aiohttp.ClientSession() as session:
                streaming = asyncio.create_task(execute(session))
                await gated.started.wait()

                async with session.post(
                    f"{_base_url(server)}/flows/{gated.run_id}/cancel"
                ) as resp:
                    assert resp.status == 202

                gated.release.set()
                events = await streaming

            assert events[-1]["type"] == "flow-error"
            assert events[-1]["status"] == "cancelled"
            assert adapter.calls == []
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self):
        server, _, _ = _make_server()
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{_base_url(server)}/flows/nope/cancel") as resp:
                    assert resp.status == 404
        finally:
            await server.stop()


class TestSignature:
    @pytest.mark.asyncio
    async def test_rejects_unsigned_request(self):
        server, _, _ = _make_server(secret="s3cret")
        await server.start()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    json={"graph": email_flow(), "message": QUERY},
                ) as resp:
                    assert resp.status == 401
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_accepts_signed_request(self):
        server, _, _ = _make_server(judge_score=95, secret="s3cret")
        await server.start()
        body = json.dumps({"graph": email_flow(), "message": QUERY}).encode()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/flows/execute",
                    data=body,
                    headers={
                        "Content-Type": "application/json",
                        "X-Hub-Signature-256": _sign(body, "s3cret"),
                    },
                ) as resp:
                    assert resp.status == 200
                    events = await _read_events(resp)

            assert events[-1]["status"] == "completed"
        finally:
            await server.stop()
