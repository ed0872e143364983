"""
Tests for the evaluation gate: tier order, precedence and autonomy tiers.
"""

import asyncio

import pytest

from flowgate.config import EvalConfig
from flowgate.errors import GateBlockError
from flowgate.eval.assertions import Assertion, Severity
from flowgate.eval.gate import (
    AutonomyTier,
    Decision,
    EvalRules,
    EvaluationGate,
    L3Trigger,
)
from flowgate.eval.judge import LLMJudge
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.provider import LLMProvider, LLMProviderError, LLMResponse

from helpers import GOOD_BODY, GOOD_EMAIL, PLACEHOLDER_BODY, QUERY, judge_reply

RANK = {Decision.BLOCKED: 0, Decision.REQUIRES_APPROVAL: 1, Decision.AUTO_PROCEED: 2}


class SlowProvider(LLMProvider):
    """Provider that never answers in time."""

    model = "slow/model"

    def complete(self, messages, system="", max_tokens=1024, temperature=None, json_mode=False):
        raise NotImplementedError

    async def acomplete(
        self, messages, system="", max_tokens=1024, temperature=None, json_mode=False
    ):
        await asyncio.sleep(5)
        return LLMResponse(content=judge_reply(99), model=self.model)


def gate_with_judge(
    score: int, should_block: bool = False
) -> tuple[EvaluationGate, MockLLMProvider]:
    provider = MockLLMProvider(judge_reply(score, should_block))
    gate = EvaluationGate(judge=LLMJudge(provider), config=EvalConfig())
    return gate, provider


class TestScope:
    @pytest.mark.asyncio
    async def test_non_side_effect_action_proceeds(self):
        gate = EvaluationGate()
        verdict = await gate.evaluate("lookup_order", {"id": "{{placeholder}}"})

        assert verdict.decision == Decision.AUTO_PROCEED
        assert not verdict.l3_triggered
        assert not gate.applies_to("lookup_order")

    @pytest.mark.asyncio
    async def test_reversible_action_skips_judge(self):
        gate = EvaluationGate()  # no judge configured
        verdict = await gate.evaluate(
            "create_notion_page", {"title": "Order 1042", "content": GOOD_BODY}
        )

        assert verdict.decision == Decision.AUTO_PROCEED
        assert not verdict.l3_triggered
        assert verdict.label == "Create Notion Page"


class TestSchemaAndL1:
    @pytest.mark.asyncio
    async def test_schema_failure_blocks(self):
        gate, judge_provider = gate_with_judge(100)
        verdict = await gate.evaluate("send_email", {"to": "sam@example.com", "body": GOOD_BODY})

        assert verdict.decision == Decision.BLOCKED
        assert verdict.schema_valid is False
        assert any(e.startswith("subject") for e in verdict.schema_errors)
        assert verdict.block_reason.startswith("Schema validation failed")
        assert judge_provider.calls == []

    @pytest.mark.asyncio
    async def test_placeholder_blocks_before_judge(self):
        gate, judge_provider = gate_with_judge(100)
        verdict = await gate.evaluate("send_email", {**GOOD_EMAIL, "body": PLACEHOLDER_BODY})

        assert verdict.blocked
        assert verdict.l1_passed is False
        assert verdict.l1_failures[0].check == "no_placeholders"
        assert "[Customer Name]" in verdict.block_reason
        assert judge_provider.calls == []

    @pytest.mark.asyncio
    async def test_profanity_blocks(self):
        gate, _ = gate_with_judge(100)
        body = GOOD_BODY.replace("at any time", "at any damn time")
        verdict = await gate.evaluate("send_email", {**GOOD_EMAIL, "body": body})

        assert verdict.blocked
        assert verdict.l1_failures[0].check == "no_profanity"

    @pytest.mark.asyncio
    async def test_default_rules_pass_ordinary_words(self):
        gate, _ = gate_with_judge(100)
        body = GOOD_BODY.replace(
            "at any time.", "at any time. Happy to assist you and pass on the tracking number."
        )
        verdict = await gate.evaluate("send_email", {**GOOD_EMAIL, "body": body})

        assert not verdict.blocked
        assert verdict.l1_failures == []

    @pytest.mark.asyncio
    async def test_warn_assertion_is_recorded_not_blocking(self):
        gate, _ = gate_with_judge(95)
        rules = EvalRules(assertions=[Assertion(check="no_generic_greeting")])
        body = GOOD_BODY.replace("Hi Sam,", "Dear Sir/Madam,")
        verdict = await gate.evaluate("send_email", {**GOOD_EMAIL, "body": body}, rules=rules)

        assert not verdict.blocked
        assert [w.check for w in verdict.l1_warnings] == ["no_generic_greeting"]
        assert any(s.startswith("L1 warning") for s in verdict.suggestions)

    @pytest.mark.asyncio
    async def test_severity_override(self):
        gate, _ = gate_with_judge(95)
        rules = EvalRules(assertions=[Assertion(check="no_placeholders", severity=Severity.WARN)])
        verdict = await gate.evaluate(
            "send_email", {**GOOD_EMAIL, "body": PLACEHOLDER_BODY}, rules=rules
        )

        assert not verdict.blocked
        assert verdict.l1_warnings[0].check == "no_placeholders"

    @pytest.mark.asyncio
    async def test_recipient_name_taken_from_args(self):
        gate, _ = gate_with_judge(95)
        rules = EvalRules(assertions=[Assertion(check="contains_recipient_name")])
        args = {**GOOD_EMAIL, "recipientName": "Jordan Lee"}
        verdict = await gate.evaluate("send_email", args, rules=rules)

        assert verdict.blocked
        assert "Jordan Lee" in verdict.block_reason

    @pytest.mark.asyncio
    async def test_l1_disabled(self):
        gate, _ = gate_with_judge(95)
        rules = EvalRules(enable_l1=False)
        verdict = await gate.evaluate(
            "send_email", {**GOOD_EMAIL, "body": PLACEHOLDER_BODY}, rules=rules
        )
        assert not verdict.blocked


class TestL2:
    @pytest.mark.asyncio
    async def test_low_score_requires_approval_without_judge(self):
        gate = EvaluationGate(config=EvalConfig())
        rules = EvalRules(enable_l3=False, min_score=90)
        args = {**GOOD_EMAIL, "body": "ok thanks"}
        verdict = await gate.evaluate("send_email", args, rules=rules)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.l2_passed is False
        assert verdict.approval_reason.startswith("L2 score too low")
        assert {d.dimension for d in verdict.l2_breakdown} == {
            "relevance",
            "quality",
            "tone",
            "completeness",
        }

    @pytest.mark.asyncio
    async def test_good_content_scores_full_marks(self):
        gate = EvaluationGate(config=EvalConfig())
        rules = EvalRules(enable_l3=False)
        context = {"query": QUERY}
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules, context=context)

        assert verdict.decision == Decision.AUTO_PROCEED
        assert verdict.l2_score == 100

    @pytest.mark.asyncio
    async def test_on_l2_fail_trigger_skips_judge_when_l2_passes(self):
        gate = EvaluationGate(config=EvalConfig())  # no judge
        rules = EvalRules(l3_trigger=L3Trigger.ON_L2_FAIL)
        context = {"query": QUERY}
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules, context=context)

        assert verdict.decision == Decision.AUTO_PROCEED
        assert not verdict.l3_triggered


class TestL3:
    @pytest.mark.asyncio
    async def test_high_score_auto_proceeds(self):
        gate, judge_provider = gate_with_judge(92)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, context={"query": QUERY})

        assert verdict.decision == Decision.AUTO_PROCEED
        assert verdict.l3_triggered
        assert verdict.l3_score == 92
        assert verdict.l3_passed is True
        prompt = judge_provider.calls[0]["messages"][0]["content"]
        assert "Subject: Your order" in prompt
        assert QUERY in prompt

    @pytest.mark.asyncio
    async def test_score_below_threshold_requires_approval(self):
        gate, _ = gate_with_judge(70)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.approval_reason == "L3 score 70 below auto-send threshold 85"
        assert verdict.l3_passed is False

    @pytest.mark.asyncio
    async def test_threshold_from_rules(self):
        gate, _ = gate_with_judge(92)
        rules = EvalRules.model_validate({"autoSendThreshold": 95})
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules)
        assert verdict.decision == Decision.REQUIRES_APPROVAL

    @pytest.mark.asyncio
    async def test_judge_block_requires_approval_not_block(self):
        gate, _ = gate_with_judge(95, should_block=True)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.approval_reason.startswith("L3 flagged")

    @pytest.mark.asyncio
    async def test_confident_judge_cannot_clear_failing_l2(self):
        gate, _ = gate_with_judge(92)
        rules = EvalRules(min_score=100)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules)

        assert verdict.l2_passed is False
        assert verdict.l3_score == 92
        assert verdict.l3_passed is True
        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.approval_reason.startswith("L2 score too low")

    @pytest.mark.asyncio
    async def test_missing_judge_requires_approval(self):
        gate = EvaluationGate(config=EvalConfig())
        verdict = await gate.evaluate("send_email", GOOD_EMAIL)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.approval_reason == "L3 judge required but not configured"

    @pytest.mark.asyncio
    async def test_judge_timeout_requires_approval(self):
        gate = EvaluationGate(judge=LLMJudge(SlowProvider(), timeout_seconds=0.05))
        verdict = await gate.evaluate("send_email", GOOD_EMAIL)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.l3_score is None
        assert verdict.approval_reason == "L3 judge unavailable: Judge timed out"

    @pytest.mark.asyncio
    async def test_judge_error_requires_approval(self):
        provider = MockLLMProvider(error=LLMProviderError("overloaded", retryable=True))
        gate = EvaluationGate(judge=LLMJudge(provider))
        verdict = await gate.evaluate("send_email", GOOD_EMAIL)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert "overloaded" in verdict.approval_reason

    @pytest.mark.asyncio
    async def test_l3_disabled_globally(self):
        config = EvalConfig(enable_l3=False)
        gate = EvaluationGate(config=config)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, context={"query": QUERY})
        assert verdict.decision == Decision.AUTO_PROCEED


class TestAutonomyTiers:
    @pytest.mark.asyncio
    async def test_readonly_blocks_side_effects(self):
        gate, judge_provider = gate_with_judge(100)
        rules = EvalRules(autonomy_tier=AutonomyTier.READONLY)
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules)

        assert verdict.blocked
        assert "read-only" in verdict.block_reason
        assert judge_provider.calls == []

    @pytest.mark.asyncio
    async def test_readonly_allows_reads(self):
        gate = EvaluationGate()
        rules = EvalRules(autonomy_tier=AutonomyTier.READONLY)
        verdict = await gate.evaluate("lookup_order", {"id": "1042"}, rules=rules)
        assert verdict.may_proceed

    @pytest.mark.asyncio
    async def test_review_requires_approval_for_perfect_content(self):
        gate, _ = gate_with_judge(100)
        rules = EvalRules.model_validate({"autonomyTier": "review"})
        verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules)

        assert verdict.decision == Decision.REQUIRES_APPROVAL
        assert verdict.approval_reason == "Agent autonomy tier requires review"

    @pytest.mark.asyncio
    async def test_review_does_not_soften_blocks(self):
        gate, _ = gate_with_judge(100)
        rules = EvalRules(autonomy_tier=AutonomyTier.REVIEW)
        verdict = await gate.evaluate(
            "send_email", {**GOOD_EMAIL, "body": PLACEHOLDER_BODY}, rules=rules
        )
        assert verdict.blocked


class TestMonotonicity:
    @pytest.mark.asyncio
    async def test_stricter_rules_never_loosen_the_decision(self):
        gate, _ = gate_with_judge(92)
        ladder = [
            EvalRules(),
            EvalRules(auto_send_threshold=95),
            EvalRules(auto_send_threshold=95, autonomy_tier=AutonomyTier.REVIEW),
            EvalRules(
                auto_send_threshold=95,
                autonomy_tier=AutonomyTier.REVIEW,
                assertions=[
                    Assertion(check="contains_recipient_name", params={"recipientName": "Jo"})
                ],
            ),
            EvalRules(autonomy_tier=AutonomyTier.READONLY),
        ]
        ranks = []
        for rules in ladder:
            verdict = await gate.evaluate("send_email", GOOD_EMAIL, rules=rules)
            ranks.append(RANK[verdict.decision])

        assert ranks == sorted(ranks, reverse=True)
        assert ranks[0] == RANK[Decision.AUTO_PROCEED]
        assert ranks[-1] == RANK[Decision.BLOCKED]

    @pytest.mark.asyncio
    async def test_lower_judge_score_never_loosens(self):
        ranks = []
        for score in (100, 90, 85, 84, 50, 10):
            gate, _ = gate_with_judge(score)
            verdict = await gate.evaluate("send_email", GOOD_EMAIL)
            ranks.append(RANK[verdict.decision])
        assert ranks == sorted(ranks, reverse=True)


class TestVerdict:
    def test_camel_case_rules(self):
        rules = EvalRules.model_validate(
            {
                "minConfidence": 70,
                "l3Trigger": "always",
                "autoSendThreshold": 90,
                "expectedTone": "friendly",
                "requiredElements": ["order number"],
            }
        )
        assert rules.min_score == 70
        assert rules.l3_trigger == L3Trigger.ALWAYS
        assert rules.auto_send_threshold == 90
        assert rules.expected_tone == "friendly"
        assert rules.required_elements == ["order number"]

    def test_default_assertions(self):
        assert [a.check for a in EvalRules().assertions] == ["no_placeholders", "no_profanity"]

    def test_unknown_assertion_rejected(self):
        with pytest.raises(ValueError):
            Assertion(check="is_polite")

    @pytest.mark.asyncio
    async def test_to_error(self):
        gate = EvaluationGate()
        verdict = await gate.evaluate("send_email", {**GOOD_EMAIL, "body": PLACEHOLDER_BODY})
        error = verdict.to_error()

        assert isinstance(error, GateBlockError)
        assert error.verdict is verdict
        assert error.to_dict()["kind"] == "GateBlockError"
