"""
Content evaluation for side-effecting actions: schema, L1, L2, L3.
"""

from flowgate.eval.actions import ActionRegistry, ActionSpec, default_action_registry
from flowgate.eval.assertions import Assertion, Severity, evaluate_l1
from flowgate.eval.gate import (
    AutonomyTier,
    Decision,
    EvalRules,
    EvalVerdict,
    EvaluationGate,
    L3Trigger,
)
from flowgate.eval.judge import L3Result, LLMJudge
from flowgate.eval.scoring import evaluate_l2

__all__ = [
    "ActionRegistry",
    "ActionSpec",
    "Assertion",
    "AutonomyTier",
    "Decision",
    "EvalRules",
    "EvalVerdict",
    "EvaluationGate",
    "L3Result",
    "L3Trigger",
    "LLMJudge",
    "Severity",
    "default_action_registry",
    "evaluate_l1",
    "evaluate_l2",
]
