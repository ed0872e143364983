"""Graph builders and fakes shared by the flowgate tests."""

from typing import Any

from flowgate.config import EngineConfig, EvalConfig
from flowgate.eval.gate import EvaluationGate
from flowgate.eval.judge import LLMJudge
from flowgate.graph.executor import FlowExecutor
from flowgate.integrations.adapters import AdapterRegistry
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.registry import ProviderRegistry

QUERY = "Where is my order"

# Passes L1 and scores 100 on L2 for QUERY
GOOD_BODY = (
    "Hi Sam,\n\nYour order 1042 shipped today and should arrive on Friday. "
    "You can track where the parcel is from your account page at any time.\n\n"
    "Best regards,\nSupport."
)

PLACEHOLDER_BODY = "Hi [Customer Name], your order shipped today and arrives on Friday."

GOOD_EMAIL = {"to": "sam@example.com", "subject": "Your order", "body": GOOD_BODY}


def judge_reply(score: int, should_block: bool = False, reason: str = "Looks fine") -> str:
    return (
        f'{{"score": {score}, "shouldBlock": {str(should_block).lower()}, '
        f'"shouldWarn": false, "reason": "{reason}", "suggestions": [], "confidence": 0.9}}'
    )


def mock_judge(score: int, should_block: bool = False) -> LLMJudge:
    return LLMJudge(MockLLMProvider(judge_reply(score, should_block)), timeout_seconds=5)


class RecordingAdapter:
    """Adapter that records every call and returns a canned result."""

    def __init__(self, result: Any = None, error: Exception | None = None):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.result = {"id": "msg_1"} if result is None else result
        self.error = error

    async def execute(self, action: str, args: dict[str, Any]) -> Any:
        self.calls.append((action, dict(args)))
        if self.error is not None:
            raise self.error
        return self.result


def make_gate(judge_score: int | None = None) -> EvaluationGate:
    judge = mock_judge(judge_score) if judge_score is not None else None
    return EvaluationGate(judge=judge, config=EvalConfig())


def make_executor(
    llm_reply: str = GOOD_BODY,
    judge_score: int | None = None,
    adapter: RecordingAdapter | None = None,
    max_steps: int = 10,
) -> tuple[FlowExecutor, MockLLMProvider, RecordingAdapter]:
    """Executor with a mock model, an optional mock judge and one recording adapter."""
    llm = MockLLMProvider(llm_reply)
    adapter = adapter or RecordingAdapter()
    executor = FlowExecutor(
        registry=ProviderRegistry(default=llm),
        gate=make_gate(judge_score),
        adapters=AdapterRegistry(default=adapter),
        engine_config=EngineConfig(max_steps=max_steps),
    )
    return executor, llm, adapter


def email_flow(to: str = "sam@example.com") -> dict[str, Any]:
    """trigger -> draft (model) -> send (send_email) in editor format."""
    return {
        "nodes": [
            {"id": "trigger", "type": "messageReceived", "data": {}},
            {"id": "draft", "type": "agentStep", "data": {"prompt": "Draft a reply"}},
            {
                "id": "send",
                "type": "sendEmail",
                "data": {
                    "label": "Reply to customer",
                    "args": {"to": to, "subject": "Your order", "body": "{{draft.content}}"},
                },
            },
        ],
        "edges": [
            {"id": "e1", "source": "trigger", "target": "draft"},
            {"id": "e2", "source": "draft", "target": "send"},
        ],
    }


def strip_volatile(events: list[Any]) -> list[dict[str, Any]]:
    """Event dicts without the fields that differ between identical runs."""
    stripped = []
    for event in events:
        data = event.to_dict()
        data.pop("timestamp")
        data.pop("run_id")
        stripped.append(data)
    return stripped
