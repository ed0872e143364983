"""
Tier L1 - deterministic assertions.

Fast, rule-based checks that run before any scoring. Each assertion has a
severity: a failed ``block`` assertion hard-blocks the action, a failed
``warn`` assertion is recorded and surfaced as a suggestion.

Usage:
    rules = [Assertion(check="no_placeholders"), Assertion(check="no_profanity")]
    result = evaluate_l1(text, rules, context={"recipientName": "John Smith"})
    if not result.passed:
        print(result.failed_assertions)
"""

from __future__ import annotations

import re
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Severity(StrEnum):
    BLOCK = "block"
    WARN = "warn"


class AssertionResult(BaseModel):
    check: str
    passed: bool
    severity: Severity
    message: str | None = None


class L1Result(BaseModel):
    passed: bool
    failed_assertions: list[AssertionResult] = Field(default_factory=list)
    warnings: list[AssertionResult] = Field(default_factory=list)
    all_results: list[AssertionResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

PLACEHOLDER_PATTERN = re.compile(r"\{\{[^}]+\}\}|\[[A-Z][^\]]*\]|\{[a-z_]+\}")

GENERIC_GREETINGS = [
    re.compile(r"dear sir/madam", re.IGNORECASE),
    re.compile(r"to whom it may concern", re.IGNORECASE),
    re.compile(r"dear hiring manager", re.IGNORECASE),
    re.compile(r"hello there", re.IGNORECASE),
]

LANGUAGE_PATTERNS = {
    "en": re.compile(r"\b(the|and|is|are|was|were|have|has|will|would|can|could)\b", re.IGNORECASE),
    "fr": re.compile(
        r"\b(le|la|les|de|et|est|sont|avoir|être|je|tu|il|elle|nous|vous)\b", re.IGNORECASE
    ),
    "es": re.compile(
        r"\b(el|la|los|las|de|y|es|son|tener|ser|yo|tú|él|ella|nosotros)\b", re.IGNORECASE
    ),
    "de": re.compile(
        r"\b(der|die|das|den|dem|und|ist|sind|haben|sein|ich|du|er|sie|wir)\b", re.IGNORECASE
    ),
}

PROFANITY_WORDS = ["fuck", "shit", "damn", "ass", "bitch"]
PROFANITY_PATTERN = re.compile(r"\b(" + "|".join(PROFANITY_WORDS) + r")\b", re.IGNORECASE)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_GREETING_PREFIX = re.compile(r"^(hi|hello|dear|greetings)[^.!?\n]*", re.IGNORECASE)
_SIGNOFF_SUFFIX = re.compile(r"(best regards|sincerely|cheers|thanks)[^.!?\n]*$", re.IGNORECASE)

MIN_REAL_CONTENT_CHARS = 50


def check_no_placeholders(
    text: str, params: dict[str, Any], ctx: dict[str, Any]
) -> AssertionResult:
    matches = PLACEHOLDER_PATTERN.findall(text)
    return AssertionResult(
        check="no_placeholders",
        passed=not matches,
        severity=Severity.BLOCK,
        message=f"Found placeholders: {', '.join(matches)}" if matches else None,
    )


def check_contains_recipient_name(
    text: str, params: dict[str, Any], ctx: dict[str, Any]
) -> AssertionResult:
    name = params.get("recipientName") or ctx.get("recipientName")
    if not name:
        return AssertionResult(
            check="contains_recipient_name", passed=True, severity=Severity.BLOCK
        )
    first_name = str(name).split(" ")[0]
    found = first_name in text or name in text
    return AssertionResult(
        check="contains_recipient_name",
        passed=found,
        severity=Severity.BLOCK,
        message=None if found else f'Recipient name "{name}" not found',
    )


def check_no_generic_greeting(
    text: str, params: dict[str, Any], ctx: dict[str, Any]
) -> AssertionResult:
    found = any(p.search(text) for p in GENERIC_GREETINGS)
    return AssertionResult(
        check="no_generic_greeting",
        passed=not found,
        severity=Severity.WARN,
        message="Generic greeting detected" if found else None,
    )


def check_max_length(text: str, params: dict[str, Any], ctx: dict[str, Any]) -> AssertionResult:
    max_length = params.get("maxLength") or 10000
    passed = len(text) <= max_length
    return AssertionResult(
        check="respects_max_length",
        passed=passed,
        severity=Severity.WARN,
        message=None if passed else f"Text too long: {len(text)} chars (max {max_length})",
    )


def check_min_length(text: str, params: dict[str, Any], ctx: dict[str, Any]) -> AssertionResult:
    min_length = params.get("minLength") or 10
    passed = len(text) >= min_length
    return AssertionResult(
        check="respects_min_length",
        passed=passed,
        severity=Severity.WARN,
        message=None if passed else f"Text too short: {len(text)} chars (min {min_length})",
    )


def check_correct_language(
    text: str, params: dict[str, Any], ctx: dict[str, Any]
) -> AssertionResult:
    language = params.get("language") or "en"
    pattern = LANGUAGE_PATTERNS.get(language, LANGUAGE_PATTERNS["en"])
    passed = len(pattern.findall(text)) >= 3
    return AssertionResult(
        check="correct_language",
        passed=passed,
        severity=Severity.WARN,
        message=None if passed else f"Expected language: {language}",
    )


def check_no_profanity(text: str, params: dict[str, Any], ctx: dict[str, Any]) -> AssertionResult:
    found = PROFANITY_PATTERN.search(text) is not None
    return AssertionResult(
        check="no_profanity",
        passed=not found,
        severity=Severity.BLOCK,
        message="Inappropriate content detected" if found else None,
    )


def check_valid_email(text: str, params: dict[str, Any], ctx: dict[str, Any]) -> AssertionResult:
    if not params.get("requireEmail"):
        return AssertionResult(check="has_valid_email", passed=True, severity=Severity.WARN)
    found = EMAIL_PATTERN.search(text) is not None
    return AssertionResult(
        check="has_valid_email",
        passed=found,
        severity=Severity.WARN,
        message=None if found else "No valid email found",
    )


def check_real_content(text: str, params: dict[str, Any], ctx: dict[str, Any]) -> AssertionResult:
    stripped = _GREETING_PREFIX.sub("", text)
    stripped = _SIGNOFF_SUFFIX.sub("", stripped).strip()
    passed = len(stripped) > MIN_REAL_CONTENT_CHARS
    return AssertionResult(
        check="has_real_content",
        passed=passed,
        severity=Severity.BLOCK,
        message=None if passed else f"Too little content: {len(stripped)} chars",
    )


def check_required_fields(
    text: str, params: dict[str, Any], ctx: dict[str, Any]
) -> AssertionResult:
    args = ctx.get("args") or {}
    missing = [
        name
        for name in params.get("fields") or []
        if args.get(name) is None or (isinstance(args.get(name), str) and not args[name].strip())
    ]
    return AssertionResult(
        check="required_fields",
        passed=not missing,
        severity=Severity.BLOCK,
        message=f"Missing required fields: {', '.join(missing)}" if missing else None,
    )


CHECKS: dict[str, Callable[[str, dict[str, Any], dict[str, Any]], AssertionResult]] = {
    "no_placeholders": check_no_placeholders,
    "contains_recipient_name": check_contains_recipient_name,
    "no_generic_greeting": check_no_generic_greeting,
    "respects_max_length": check_max_length,
    "respects_min_length": check_min_length,
    "correct_language": check_correct_language,
    "no_profanity": check_no_profanity,
    "has_valid_email": check_valid_email,
    "has_real_content": check_real_content,
    "required_fields": check_required_fields,
}


class Assertion(BaseModel):
    """One configured L1 check. ``severity`` overrides the check's default."""

    check: str
    severity: Severity | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("check")
    @classmethod
    def _known_check(cls, value: str) -> str:
        if value not in CHECKS:
            raise ValueError(f"Unknown assertion check: {value}")
        return value


def evaluate_l1(
    text: str,
    assertions: list[Assertion],
    context: dict[str, Any] | None = None,
) -> L1Result:
    """Run every configured assertion against ``text``."""
    ctx = context or {}
    results: list[AssertionResult] = []
    for assertion in assertions:
        result = CHECKS[assertion.check](text, assertion.params, ctx)
        if assertion.severity is not None:
            result.severity = assertion.severity
        results.append(result)

    failed = [r for r in results if not r.passed and r.severity == Severity.BLOCK]
    warnings = [r for r in results if not r.passed and r.severity == Severity.WARN]
    return L1Result(
        passed=not failed,
        failed_assertions=failed,
        warnings=warnings,
        all_results=results,
    )
