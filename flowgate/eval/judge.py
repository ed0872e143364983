"""Tier L3 - language model as judge.

Invoked only for irreversible actions, and only when the trigger policy
asks for it. A separate model call reads the candidate content and scores
it 0-100. The call runs under a hard timeout; any failure (timeout,
provider error) produces a failed verdict so the gate falls back to
requiring approval. The judge never fails open.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from flowgate.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

JUDGE_TEMPERATURE = 0.1
JUDGE_MAX_TOKENS = 1024
BLOCK_BELOW = 30
WARN_BELOW = 70

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_SCORE_IN_TEXT = re.compile(r"score[:\s]+(\d+)", re.IGNORECASE)


class L3Result(BaseModel):
    """Result of a judge call."""

    score: int = 0
    should_block: bool = False
    should_warn: bool = False
    can_auto_send: bool = False
    reason: str = ""
    suggestions: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def build_system_prompt(action: str) -> str:
    return f"""You are an expert evaluator assessing AI-generated content before it's sent to users.

Your task: Evaluate the quality, appropriateness, and safety of the content.

Evaluation criteria:
1. **Accuracy**: Is information correct and verifiable?
2. **Appropriateness**: Is tone and content suitable for the context?
3. **Safety**: Could this cause harm, offense, or legal issues?
4. **Completeness**: Does it fully address the intent?
5. **Quality**: Is it well-written and professional?

Action being evaluated: {action}

Output format (JSON):
{{
  "score": 0-100,
  "shouldBlock": true/false,
  "shouldWarn": true/false,
  "reason": "Brief explanation",
  "suggestions": ["Suggestion 1", "Suggestion 2"],
  "confidence": 0.0-1.0
}}

Scoring guide:
- 90-100: Excellent, ready to send
- 70-89: Good, minor improvements possible
- 50-69: Acceptable but needs review
- 30-49: Poor, significant issues
- 0-29: Unacceptable, must not send

Block if:
- Contains false information
- Inappropriate tone for context
- Could cause harm or offense
- Missing critical information
- Contains placeholders or errors"""


def build_user_prompt(text: str, context: dict[str, Any] | None = None) -> str:
    prompt = f"Evaluate this content:\n\n{text}"
    if context:
        prompt += f"\n\nContext:\n{json.dumps(context, indent=2, default=str)}"
    prompt += "\n\nProvide your evaluation in JSON format."
    return prompt


def parse_judge_response(response: str, auto_send_threshold: int) -> L3Result:
    """Parse the judge's reply. Falls back to a bare ``score: N`` in the text."""
    match = _JSON_OBJECT.search(response)
    if match:
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            try:
                score = int(data.get("score") or 0)
            except (TypeError, ValueError):
                score = 0
            suggestions = data.get("suggestions") or []
            return L3Result(
                score=score,
                should_block=bool(data.get("shouldBlock")) or score < BLOCK_BELOW,
                should_warn=bool(data.get("shouldWarn")) or score < WARN_BELOW,
                can_auto_send=score >= auto_send_threshold,
                reason=str(data.get("reason") or "No reason provided"),
                suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
                confidence=float(data.get("confidence") or 0.8),
            )

    logger.warning("Judge response was not valid JSON, falling back to score extraction")
    score_match = _SCORE_IN_TEXT.search(response)
    score = int(score_match.group(1)) if score_match else 50
    return L3Result(
        score=score,
        should_block=score < BLOCK_BELOW,
        should_warn=score < WARN_BELOW,
        can_auto_send=score >= auto_send_threshold,
        reason="Unable to parse detailed evaluation",
        confidence=0.5,
    )


class LLMJudge:
    """
    Judge backed by an LLMProvider.

    Example:
        judge = LLMJudge(provider, timeout_seconds=20)
        result = await judge.evaluate(text, action="send_email", auto_send_threshold=85)
    """

    def __init__(self, provider: LLMProvider, timeout_seconds: float = 20.0):
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def evaluate(
        self,
        text: str,
        action: str,
        auto_send_threshold: int = 85,
        context: dict[str, Any] | None = None,
    ) -> L3Result:
        messages = [{"role": "user", "content": build_user_prompt(text, context)}]
        try:
            response = await asyncio.wait_for(
                self.provider.acomplete(
                    messages=messages,
                    system=build_system_prompt(action),
                    max_tokens=JUDGE_MAX_TOKENS,
                    temperature=JUDGE_TEMPERATURE,
                ),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning(f"L3 judge timed out after {self.timeout_seconds}s for {action}")
            return L3Result(reason="Judge timed out", error="timeout")
        except Exception as e:
            logger.warning(f"L3 judge failed for {action}, requiring approval: {e}")
            return L3Result(reason=f"Judge unavailable: {e}", error=str(e))

        result = parse_judge_response(response.content, auto_send_threshold)
        logger.debug(f"L3 judge scored {action}: {result.score} ({result.reason})")
        return result
