"""
Evaluation Gate - decides whether a side-effecting action may run.

Stages run strictly in order and each can short-circuit:

1. Schema     - argument shape check. Failure is a hard block.
2. L1         - deterministic assertions. Any ``block`` failure is a hard block.
3. L2         - rule-based score. Below ``min_score`` requires approval.
4. L3         - judge model, only for irreversible actions under the trigger
                policy. Score at or above the auto-send threshold (and no
                judge block) auto-proceeds; anything else requires approval.

Precedence: a hard block wins outright. Otherwise the judge decides when it
ran, else L2 decides. With no tier triggered the action auto-proceeds.

The gate never raises for content problems; it returns an EvalVerdict the
caller stores and acts on.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from flowgate.config import EvalConfig
from flowgate.errors import GateBlockError
from flowgate.eval.actions import ActionRegistry, default_action_registry
from flowgate.eval.assertions import Assertion, AssertionResult, Severity, evaluate_l1
from flowgate.eval.judge import LLMJudge
from flowgate.eval.scoring import ScoreDimension, Tone, evaluate_l2

logger = logging.getLogger(__name__)


class L3Trigger(StrEnum):
    ALWAYS = "always"
    ON_L2_FAIL = "on_l2_fail"
    ON_IRREVERSIBLE_ACTION = "on_irreversible_action"


class AutonomyTier(StrEnum):
    """How much the agent may do without a human."""

    AUTO = "auto"  # gate verdict decides
    REVIEW = "review"  # every side effect needs approval unless blocked
    READONLY = "readonly"  # side effects are blocked outright


class Decision(StrEnum):
    AUTO_PROCEED = "auto_proceed"
    REQUIRES_APPROVAL = "requires_approval"
    BLOCKED = "blocked"


DEFAULT_ASSERTIONS = [
    Assertion(check="no_placeholders", severity=Severity.BLOCK),
    Assertion(check="no_profanity", severity=Severity.BLOCK),
]


class EvalRules(BaseModel):
    """
    Per-agent gate configuration. Unset values fall back to EvalConfig.

    Accepts the editor's camelCase keys (minConfidence, l3Trigger,
    autoSendThreshold) as well as snake_case.
    """

    assertions: list[Assertion] = Field(default_factory=lambda: list(DEFAULT_ASSERTIONS))
    enable_l1: bool | None = None
    enable_l2: bool | None = None
    enable_l3: bool | None = None
    min_score: int | None = Field(default=None, alias="minConfidence", ge=0, le=100)
    weights: dict[str, float] | None = None
    l3_trigger: L3Trigger = Field(default=L3Trigger.ON_IRREVERSIBLE_ACTION, alias="l3Trigger")
    auto_send_threshold: int | None = Field(
        default=None, alias="autoSendThreshold", ge=0, le=100
    )
    expected_tone: Tone = Field(default="professional", alias="expectedTone")
    required_elements: list[str] = Field(default_factory=list, alias="requiredElements")
    autonomy_tier: AutonomyTier = Field(default=AutonomyTier.AUTO, alias="autonomyTier")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EvalVerdict(BaseModel):
    """
    Outcome of one gate evaluation.

    Created fresh per side-effecting action invocation. The engine never
    persists it; it travels in lifecycle events and the run summary.
    """

    action: str
    label: str = ""
    decision: Decision
    schema_valid: bool = True
    schema_errors: list[str] = Field(default_factory=list)
    l1_passed: bool = True
    l1_failures: list[AssertionResult] = Field(default_factory=list)
    l1_warnings: list[AssertionResult] = Field(default_factory=list)
    l2_score: int = 100
    l2_passed: bool = True
    l2_breakdown: list[ScoreDimension] = Field(default_factory=list)
    l3_triggered: bool = False
    l3_passed: bool | None = None
    l3_score: int | None = None
    l3_reason: str | None = None
    block_reason: str | None = None
    approval_reason: str | None = None
    requires_approval: bool = False
    suggestions: list[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.decision == Decision.BLOCKED

    @property
    def may_proceed(self) -> bool:
        return self.decision == Decision.AUTO_PROCEED

    def to_error(self) -> GateBlockError:
        return GateBlockError(self.block_reason or "Blocked by evaluation gate", verdict=self)


class EvaluationGate:
    """
    Three-tier evaluation gate.

    Example:
        gate = EvaluationGate(judge=LLMJudge(provider))
        args = {"to": "a@b.co", "subject": "Hi", "body": "..."}
        verdict = await gate.evaluate("send_email", args)
        if verdict.may_proceed:
            await adapter.execute("send_email", args)
    """

    def __init__(
        self,
        actions: ActionRegistry | None = None,
        judge: LLMJudge | None = None,
        config: EvalConfig | None = None,
    ):
        self.actions = actions or default_action_registry
        self.judge = judge
        self.config = config or EvalConfig()

    def applies_to(self, action: str) -> bool:
        """Only side-effecting actions pass through the gate."""
        return self.actions.is_side_effect(action)

    async def evaluate(
        self,
        action: str,
        args: dict[str, Any],
        rules: EvalRules | None = None,
        context: dict[str, Any] | None = None,
    ) -> EvalVerdict:
        rules = rules or EvalRules()
        context = context or {}
        label = self.actions.label(action)

        if not self.applies_to(action):
            return EvalVerdict(action=action, label=label, decision=Decision.AUTO_PROCEED)

        if rules.autonomy_tier == AutonomyTier.READONLY:
            return self._blocked(
                action,
                label,
                "Agent is in read-only mode. Side-effect actions are disabled.",
            )

        # 1. Schema
        schema_errors = self.actions.validate_args(action, args)
        if schema_errors:
            logger.info(f"Gate blocked {action}: schema validation failed")
            return self._blocked(
                action,
                label,
                f"Schema validation failed: {'; '.join(schema_errors)}",
                schema_valid=False,
                schema_errors=schema_errors,
                suggestions=schema_errors,
            )

        spec = self.actions.get(action)
        content = spec.content_of(args) if spec else str(args)
        suggestions: list[str] = []

        # 2. L1
        l1_warnings: list[AssertionResult] = []
        if self._enabled(rules.enable_l1, self.config.enable_l1) and rules.assertions:
            l1_context = {"args": args, **context}
            l1_context.setdefault("recipientName", args.get("recipientName"))
            l1 = evaluate_l1(content, rules.assertions, l1_context)
            l1_warnings = l1.warnings
            if not l1.passed:
                reason = "L1 failed: " + "; ".join(
                    a.message or a.check for a in l1.failed_assertions
                )
                logger.info(f"Gate blocked {action}: {reason}")
                return self._blocked(
                    action,
                    label,
                    reason,
                    l1_passed=False,
                    l1_failures=l1.failed_assertions,
                    l1_warnings=l1.warnings,
                    suggestions=[a.message for a in l1.failed_assertions if a.message],
                )
            suggestions.extend(f"L1 warning: {w.message}" for w in l1.warnings)

        # 3. L2
        min_score = rules.min_score if rules.min_score is not None else self.config.l2_min_score
        l2_score, l2_passed, l2_breakdown = 100, True, []
        if self._enabled(rules.enable_l2, self.config.enable_l2):
            l2 = evaluate_l2(
                content,
                min_score=min_score,
                weights=rules.weights,
                query=context.get("query"),
                expected_tone=rules.expected_tone,
                required_elements=rules.required_elements,
            )
            l2_score, l2_passed, l2_breakdown = l2.score, l2.passed, l2.breakdown
            suggestions.extend(l2.recommendations)
            logger.debug(f"L2 score for {action}: {l2_score} (min {min_score})")

        verdict = EvalVerdict(
            action=action,
            label=label,
            decision=Decision.AUTO_PROCEED,
            l1_warnings=l1_warnings,
            l2_score=l2_score,
            l2_passed=l2_passed,
            l2_breakdown=l2_breakdown,
            suggestions=suggestions,
        )

        # 4. L3
        if self._should_trigger_l3(action, rules, l2_passed):
            await self._run_judge(verdict, action, args, rules, context)
        # The judge can only keep or tighten a failed L2 outcome.
        if not l2_passed and verdict.may_proceed:
            self._require_approval(verdict, f"L2 score too low: {l2_score} (min {min_score})")

        if rules.autonomy_tier == AutonomyTier.REVIEW and verdict.may_proceed:
            self._require_approval(verdict, "Agent autonomy tier requires review")

        logger.info(
            f"Gate verdict for {action}: {verdict.decision} (L2 {verdict.l2_score}"
            f"{', L3 ' + str(verdict.l3_score) if verdict.l3_triggered else ''})"
        )
        return verdict

    def _should_trigger_l3(self, action: str, rules: EvalRules, l2_passed: bool) -> bool:
        if not self._enabled(rules.enable_l3, self.config.enable_l3):
            return False
        if not self.actions.is_irreversible(action):
            return False
        if rules.l3_trigger == L3Trigger.ON_L2_FAIL:
            return not l2_passed
        return True

    async def _run_judge(
        self,
        verdict: EvalVerdict,
        action: str,
        args: dict[str, Any],
        rules: EvalRules,
        context: dict[str, Any],
    ) -> None:
        verdict.l3_triggered = True
        threshold = (
            rules.auto_send_threshold
            if rules.auto_send_threshold is not None
            else self.config.l3_auto_send_threshold
        )

        if self.judge is None:
            verdict.l3_passed = False
            self._require_approval(verdict, "L3 judge required but not configured")
            return

        spec = self.actions.get(action)
        text = spec.summary_of(args) if spec else str(args)
        judge_context = {k: v for k, v in context.items() if k != "args"}
        result = await self.judge.evaluate(text, action, threshold, judge_context or None)

        verdict.l3_score = result.score if not result.failed else None
        verdict.l3_reason = result.reason
        verdict.suggestions.extend(f"L3: {s}" for s in result.suggestions)

        if result.failed:
            verdict.l3_passed = False
            self._require_approval(verdict, f"L3 judge unavailable: {result.reason}")
            return

        verdict.l3_passed = result.score >= threshold and not result.should_block
        if result.score < threshold:
            self._require_approval(
                verdict, f"L3 score {result.score} below auto-send threshold {threshold}"
            )
        elif result.should_block:
            self._require_approval(verdict, f"L3 flagged: {result.reason}")

    @staticmethod
    def _enabled(rule_value: bool | None, default: bool) -> bool:
        return default if rule_value is None else rule_value

    @staticmethod
    def _require_approval(verdict: EvalVerdict, reason: str) -> None:
        verdict.decision = Decision.REQUIRES_APPROVAL
        verdict.requires_approval = True
        verdict.approval_reason = reason

    @staticmethod
    def _blocked(action: str, label: str, reason: str, **fields: Any) -> EvalVerdict:
        return EvalVerdict(
            action=action,
            label=label,
            decision=Decision.BLOCKED,
            block_reason=reason,
            **fields,
        )
