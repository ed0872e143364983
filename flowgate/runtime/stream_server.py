"""
Stream Server - exposes flow runs over HTTP as Server-Sent Events.

Uses aiohttp for a lightweight embedded server that runs within the
existing asyncio loop.

Routes:
    POST /flows/execute          start a run, stream its events as SSE
    POST /flows/confirm          answer a pending confirmation, stream the resumed run
    POST /flows/{run_id}/cancel  stop a run at the next node boundary
    GET  /health

Execute body:
    {"graph": {...} | "flow_id": "...", "message": "...", "conversation_id": "...",
     "agent": {...}, "retry_from_node_id": "...", "previous_node_outputs": {...}}

Confirm body:
    {"request_id": "run:node", "decision": "approved", "edited_args": {...}}

A confirmation the server saw being raised is resumed from what it kept;
otherwise the body must carry "graph", "request" and "previous_node_outputs".
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from flowgate.config import ServerConfig
from flowgate.errors import GraphInputError
from flowgate.graph.agent import AgentSpec
from flowgate.graph.edge import FlowGraph
from flowgate.graph.executor import RunSummary
from flowgate.graph.hitl import ApprovalDecision, ConfirmationRequest
from flowgate.graph.node import dump_node_output
from flowgate.runtime.flow_runtime import FlowRuntime, RunHandle

logger = logging.getLogger(__name__)


@dataclass
class PendingConfirmation:
    """What the server keeps to resume a paused run."""

    request: ConfirmationRequest
    graph: FlowGraph
    node_outputs: dict[str, Any]
    failed_nodes: set[str] = field(default_factory=set)
    agent: AgentSpec | None = None
    user_message: str = ""


class StreamServer:
    """
    Embedded HTTP server in front of a FlowRuntime.

    Lifecycle:
        server = StreamServer(runtime, ServerConfig(port=8080), secret="...")
        server.register_flow("support", graph, agent)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        runtime: FlowRuntime,
        config: ServerConfig | None = None,
        secret: str | None = None,
    ):
        self._runtime = runtime
        self._config = config or ServerConfig()
        self._secret = secret  # For HMAC-SHA256 signature verification
        self._flows: dict[str, tuple[FlowGraph, AgentSpec | None]] = {}
        self._pending: dict[str, PendingConfirmation] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def register_flow(
        self, flow_id: str, graph: FlowGraph, agent: AgentSpec | None = None
    ) -> None:
        """Make a graph addressable by ``flow_id`` in execute requests."""
        graph.ensure_valid()
        self._flows[flow_id] = (graph, agent)

    @property
    def pending(self) -> dict[str, PendingConfirmation]:
        return self._pending

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/flows/execute", self._handle_execute)
        app.router.add_post("/flows/confirm", self._handle_confirm)
        app.router.add_post("/flows/{run_id}/cancel", self._handle_cancel)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Stream server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Stream server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        """Read, verify and decode a request body. Raises web.HTTPException."""
        try:
            body = await request.read()
        except Exception:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Failed to read request body"}),
                content_type="application/json",
            ) from None

        if self._secret and not self._verify_signature(request, body, self._secret):
            raise web.HTTPUnauthorized(
                text=json.dumps({"error": "Invalid signature"}), content_type="application/json"
            )

        try:
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError):
            payload = None
        if not isinstance(payload, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Body must be a JSON object"}),
                content_type="application/json",
            )
        return payload

    def _resolve_flow(
        self, payload: dict[str, Any]
    ) -> tuple[FlowGraph | dict[str, Any], AgentSpec | None]:
        agent = AgentSpec.model_validate(payload["agent"]) if payload.get("agent") else None
        flow_id = payload.get("flow_id")
        if flow_id is not None:
            if flow_id not in self._flows:
                raise GraphInputError(f"Unknown flow '{flow_id}'")
            graph, registered_agent = self._flows[flow_id]
            return graph, agent or registered_agent
        graph_input = payload.get("graph")
        if not isinstance(graph_input, dict):
            raise GraphInputError("Request needs a 'graph' object or a registered 'flow_id'")
        return graph_input, agent

    async def _handle_execute(self, request: web.Request) -> web.StreamResponse:
        payload = await self._read_json(request)
        try:
            graph, agent = self._resolve_flow(payload)
        except (GraphInputError, ValidationError) as e:
            return web.json_response({"error": str(e)}, status=400)

        message = str(payload.get("message", ""))
        handle = await self._runtime.execute(
            graph,
            message,
            conversation_id=payload.get("conversation_id"),
            retry_from_node_id=payload.get("retry_from_node_id"),
            previous_node_outputs=payload.get("previous_node_outputs"),
            agent=agent,
            failed_nodes=set(payload.get("failed_nodes") or ()),
        )
        return await self._stream(request, handle, graph, agent, message)

    async def _handle_confirm(self, request: web.Request) -> web.StreamResponse:
        payload = await self._read_json(request)
        decision = payload.get("decision")
        if not decision:
            return web.json_response({"error": "Missing 'decision'"}, status=400)
        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            return web.json_response({"error": f"Unknown decision '{decision}'"}, status=400)
        if decision == ApprovalDecision.APPROVED_WITH_EDITS and not payload.get("edited_args"):
            return web.json_response(
                {"error": "'approved_with_edits' needs 'edited_args'"}, status=400
            )

        request_id = payload.get("request_id")
        pending = self._pending.pop(request_id, None) if request_id else None
        try:
            if pending is None:
                pending = self._pending_from_payload(payload)
        except (GraphInputError, ValidationError, KeyError, TypeError) as e:
            return web.json_response({"error": f"Unknown confirmation: {e}"}, status=404)

        handle = await self._runtime.resume_after_decision(
            pending.graph,
            pending.request,
            decision,
            pending.node_outputs,
            edited_args=payload.get("edited_args"),
            agent=pending.agent,
            user_message=pending.user_message,
            failed_nodes=pending.failed_nodes,
        )
        return await self._stream(
            request, handle, pending.graph, pending.agent, pending.user_message
        )

    def _pending_from_payload(self, payload: dict[str, Any]) -> PendingConfirmation:
        graph, agent = self._resolve_flow(payload)
        if not isinstance(graph, FlowGraph):
            graph = FlowGraph.from_dict(graph)
        return PendingConfirmation(
            request=ConfirmationRequest.from_dict(payload["request"]),
            graph=graph,
            node_outputs=dict(payload["previous_node_outputs"]),
            failed_nodes=set(payload.get("failed_nodes") or ()),
            agent=agent,
            user_message=str(payload.get("message", "")),
        )

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        if self._runtime.cancel(run_id):
            return web.json_response({"status": "cancelling", "run_id": run_id}, status=202)
        return web.json_response({"error": "Run not found or finished"}, status=404)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "active_runs": self._runtime.get_active_count()}
        )

    async def _stream(
        self,
        request: web.Request,
        handle: RunHandle,
        graph: FlowGraph | dict[str, Any],
        agent: AgentSpec | None,
        message: str,
    ) -> web.StreamResponse:
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "X-Run-Id": handle.run_id,
            }
        )
        await response.prepare(request)
        async for event in handle:
            await response.write(event.to_sse().encode("utf-8"))

        summary = await handle.summary()
        self._remember_confirmations(summary, graph, agent, message)
        await response.write_eof()
        return response

    def _remember_confirmations(
        self,
        summary: RunSummary,
        graph: FlowGraph | dict[str, Any],
        agent: AgentSpec | None,
        message: str,
    ) -> None:
        if not summary.pending_confirmations:
            return
        if not isinstance(graph, FlowGraph):
            graph = FlowGraph.from_dict(graph)
        outputs = {k: dump_node_output(v) for k, v in summary.node_outputs.items()}
        for confirmation in summary.pending_confirmations:
            self._pending[confirmation.request_id] = PendingConfirmation(
                request=confirmation,
                graph=graph,
                node_outputs=outputs,
                failed_nodes=summary.non_critical_failures,
                agent=agent,
                user_message=message,
            )
            logger.info(f"Holding confirmation {confirmation.request_id}")

    def _verify_signature(
        self,
        request: web.Request,
        body: bytes,
        secret: str,
    ) -> bool:
        """Verify HMAC-SHA256 signature from X-Hub-Signature-256 header."""
        signature_header = request.headers.get("X-Hub-Signature-256", "")
        if not signature_header.startswith("sha256="):
            return False

        expected_sig = signature_header[7:]  # strip "sha256="
        computed_sig = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected_sig, computed_sig)
