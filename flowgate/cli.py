"""
Command-line interface for flowgate.

Usage:
    flowgate validate flow.json
    flowgate run flow.json --message "Where is my order?" [--agent agent.json] [--mock]
    flowgate run flow.json --message "..." --retry-from send --previous summary.json
    flowgate eval send_email --args '{"to": "a@b.co", "subject": "Hi", "body": "..."}'
    flowgate serve --port 8080 --flow support=flow.json

`run` prints one JSON object per lifecycle event followed by the run summary.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from flowgate.config import EngineConfig, EvalConfig, RuntimeConfig, ServerConfig, get_api_key
from flowgate.errors import GraphInputError
from flowgate.eval.gate import EvalRules, EvaluationGate
from flowgate.eval.judge import LLMJudge
from flowgate.graph.agent import AgentSpec
from flowgate.graph.edge import FlowGraph
from flowgate.integrations.adapters import AdapterRegistry, FunctionAdapter, HttpWebhookAdapter
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.registry import ProviderRegistry
from flowgate.observability import configure_logging
from flowgate.runtime.flow_runtime import FlowRuntime

# Exit codes for `eval`
EXIT_PROCEED = 0
EXIT_BLOCKED = 1
EXIT_NEEDS_APPROVAL = 2


def _load_json(path: str) -> Any:
    with open(path, encoding="utf-8-sig") as f:
        return json.load(f)


def _print_json(data: Any, pretty: bool = False) -> None:
    print(json.dumps(data, indent=2 if pretty else None, default=str), flush=True)


def _dry_run_adapter(action: str, args: dict[str, Any]) -> dict[str, Any]:
    return {"dry_run": True, "action": action, "args": args}


def build_registry(args: argparse.Namespace) -> ProviderRegistry:
    if getattr(args, "mock", False):
        return ProviderRegistry(default=MockLLMProvider(args.mock_response))
    model = args.model or RuntimeConfig().model
    return ProviderRegistry.with_litellm(model, api_key=get_api_key())


def build_gate(args: argparse.Namespace, registry: ProviderRegistry) -> EvaluationGate:
    eval_config = EvalConfig()
    if getattr(args, "no_judge", False):
        eval_config.enable_l3 = False
    judge = LLMJudge(
        registry.resolve(eval_config.judge_model),
        timeout_seconds=eval_config.judge_timeout_seconds,
    )
    return EvaluationGate(judge=judge, config=eval_config)


def build_adapters(args: argparse.Namespace) -> AdapterRegistry:
    adapters = AdapterRegistry()
    if getattr(args, "adapter_url", None):
        adapters.set_default(HttpWebhookAdapter(args.adapter_url))
    elif getattr(args, "mock", False):
        adapters.set_default(FunctionAdapter(_dry_run_adapter))
    return adapters


def build_runtime(args: argparse.Namespace) -> FlowRuntime:
    registry = build_registry(args)
    engine_config = EngineConfig()
    if getattr(args, "max_steps", None):
        engine_config.max_steps = args.max_steps
    return FlowRuntime(
        registry=registry,
        gate=build_gate(args, registry),
        adapters=build_adapters(args),
        engine_config=engine_config,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = FlowGraph.from_dict(_load_json(args.graph))
        errors = graph.validate()
    except GraphInputError as e:
        errors = e.errors
    except (OSError, json.JSONDecodeError) as e:
        errors = [f"Cannot read {args.graph}: {e}"]

    if errors:
        print(f"✗ {args.graph} is invalid:", file=sys.stderr)
        for err in errors:
            print(f"   • {err}", file=sys.stderr)
        return 1
    print(f"✓ {args.graph}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    return 0


def _load_previous(path: str) -> tuple[dict[str, Any], set[str]]:
    """Accept either a run summary or a bare {node_id: output} map."""
    data = _load_json(path)
    if isinstance(data, dict) and "node_outputs" in data:
        failed = {
            n for n, err in (data.get("failures") or {}).items() if not err.get("fatal", True)
        }
        return data["node_outputs"], failed
    return data, set()


async def _run(args: argparse.Namespace) -> int:
    runtime = build_runtime(args)
    agent = AgentSpec.model_validate(_load_json(args.agent)) if args.agent else None
    previous, failed = _load_previous(args.previous) if args.previous else (None, None)

    handle = await runtime.execute(
        _load_json(args.graph),
        args.message,
        conversation_id=args.conversation_id,
        retry_from_node_id=args.retry_from,
        previous_node_outputs=previous,
        agent=agent,
        failed_nodes=failed,
    )
    async for event in handle:
        _print_json(event.to_dict())
    summary = await handle.summary()

    if args.summary_out:
        Path(args.summary_out).write_text(json.dumps(summary.to_dict(), indent=2, default=str))
    _print_json({"type": "summary", **summary.to_dict()})
    return 0 if summary.status in ("completed", "awaiting_confirmation") else 1


def cmd_run(args: argparse.Namespace) -> int:
    if args.retry_from and not args.previous:
        print("--retry-from requires --previous", file=sys.stderr)
        return 2
    return asyncio.run(_run(args))


async def _eval(args: argparse.Namespace) -> int:
    registry = build_registry(args)
    gate = build_gate(args, registry)
    rules = EvalRules.model_validate(_load_json(args.rules)) if args.rules else None
    context = {"query": args.query} if args.query else None
    verdict = await gate.evaluate(args.action, json.loads(args.args), rules=rules, context=context)
    _print_json(verdict.model_dump(mode="json"), pretty=True)
    if verdict.blocked:
        return EXIT_BLOCKED
    return EXIT_PROCEED if verdict.may_proceed else EXIT_NEEDS_APPROVAL


def cmd_eval(args: argparse.Namespace) -> int:
    return asyncio.run(_eval(args))


async def _serve(args: argparse.Namespace) -> None:
    from flowgate.runtime.stream_server import StreamServer

    config = ServerConfig()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    server = StreamServer(build_runtime(args), config, secret=args.secret)
    for spec in args.flow or []:
        flow_id, _, path = spec.partition("=")
        server.register_flow(flow_id, FlowGraph.from_dict(_load_json(path)))

    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        pass
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_model_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", default=None, help="Default model (or fast|smart|deep)")
    parser.add_argument(
        "--mock", action="store_true", help="Use a canned model and dry-run adapters"
    )
    parser.add_argument(
        "--mock-response", default="Mock response.", help="Text the mock model returns"
    )
    parser.add_argument("--no-judge", action="store_true", help="Disable the L3 judge")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowgate",
        description="flowgate - Run agent flows behind an evaluation gate",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default WARNING)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Check a graph file's structure")
    validate.add_argument("graph", help="Path to a graph JSON file")
    validate.set_defaults(func=cmd_validate)

    run = subparsers.add_parser("run", help="Run a graph and print its events")
    run.add_argument("graph", help="Path to a graph JSON file")
    run.add_argument("--message", "-m", required=True, help="Triggering user message")
    run.add_argument("--agent", help="Path to an agent JSON file")
    run.add_argument("--conversation-id", default=None)
    run.add_argument("--retry-from", default=None, help="Node ID to retry from")
    run.add_argument("--previous", default=None, help="Previous summary or outputs JSON")
    run.add_argument("--adapter-url", default=None, help="POST actions to this URL")
    run.add_argument("--max-steps", type=int, default=None)
    run.add_argument("--summary-out", default=None, help="Also write the summary here")
    _add_model_args(run)
    run.set_defaults(func=cmd_run)

    evaluate = subparsers.add_parser("eval", help="Run the evaluation gate on one action")
    evaluate.add_argument("action", help="Action name, e.g. send_email")
    evaluate.add_argument("--args", required=True, help="Action arguments as JSON")
    evaluate.add_argument("--rules", default=None, help="Path to an eval rules JSON file")
    evaluate.add_argument("--query", default=None, help="Request the content answers")
    _add_model_args(evaluate)
    evaluate.set_defaults(func=cmd_eval)

    serve = subparsers.add_parser("serve", help="Serve flows over HTTP (SSE)")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--secret", default=None, help="HMAC secret for request signatures")
    serve.add_argument(
        "--flow", action="append", help="Register a flow as ID=PATH (repeatable)"
    )
    serve.add_argument("--adapter-url", default=None, help="POST actions to this URL")
    serve.add_argument("--max-steps", type=int, default=None)
    _add_model_args(serve)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
