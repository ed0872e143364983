"""
Tier L2 - rule-based quality score.

Scores candidate content 0-100 across four weighted dimensions:

- relevance: on-topic, no filler, overlaps the triggering query
- quality: grammar slips, sentence length, run-ons
- tone: shouting, informal or over-formal register for the expected tone
- completeness: greeting, sign-off, required elements, finished last sentence

No model calls; cheap enough to run on every side-effecting action.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field

Tone = Literal["professional", "friendly", "casual"]

DEFAULT_WEIGHTS = {"relevance": 0.3, "quality": 0.25, "tone": 0.2, "completeness": 0.25}
RECOMMENDATION_THRESHOLD = 70


class ScoreDimension(BaseModel):
    dimension: str
    score: int
    weight: float
    issues: list[str] = Field(default_factory=list)


class L2Result(BaseModel):
    score: int
    passed: bool
    breakdown: list[ScoreDimension] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


FILLER_PHRASES = [
    "I don't have enough information",
    "I cannot answer",
    "I'm not sure",
    "I don't know",
]

GRAMMAR_PATTERNS = [
    (
        re.compile(r"\b(their|there|they're)\s+(is|are)\s+(no|not)\b", re.IGNORECASE),
        "their/there/they're confusion",
    ),
    (re.compile(r"\b(your|you're)\s+(going|gonna)\b", re.IGNORECASE), "your/you're confusion"),
    (re.compile(r"\.\s*[a-z]"), "Missing capitalization after period"),
    (re.compile(r"[a-z]\.[A-Z]"), "Missing space after period"),
]

RUN_ON_PATTERN = re.compile(r"[^.!?]{150,}")
CAPS_WORD_PATTERN = re.compile(r"\b[A-Z]{3,}\b")

INFORMAL_WORDS = ["gonna", "wanna", "kinda", "sorta", "yeah", "nah", "lol"]
CONTRACTIONS = ["don't", "can't", "won't", "shouldn't", "wouldn't"]
FORMAL_PHRASES = ["pursuant to", "aforementioned", "herewith", "heretofore"]
WARM_PHRASES = ["thank", "appreciate", "happy", "glad", "looking forward"]

CLOSING_PATTERN = re.compile(
    r"\b(best regards|sincerely|cheers|thanks|thank you|regards)\b", re.IGNORECASE
)
GREETING_PATTERN = re.compile(r"\b(hi|hello|dear|greetings)\b", re.IGNORECASE)
SENTENCE_END_PATTERN = re.compile(r"[.!?]$")


def score_relevance(text: str, query: str | None = None) -> ScoreDimension:
    issues: list[str] = []
    score = 100

    if len(text) < 50:
        score -= 30
        issues.append("Response too short")

    lowered = text.lower()
    for phrase in FILLER_PHRASES:
        if phrase.lower() in lowered:
            score -= 20
            issues.append(f'Contains filler: "{phrase}"')

    if query:
        query_words = [w for w in query.lower().split() if len(w) > 3]
        if query_words:
            matched = [w for w in query_words if w in lowered]
            if len(matched) / len(query_words) < 0.3:
                score -= 30
                issues.append("Low keyword overlap with query")

    return ScoreDimension(dimension="relevance", score=max(0, score), weight=0.3, issues=issues)


def score_quality(text: str) -> ScoreDimension:
    issues: list[str] = []
    score = 100

    for pattern, description in GRAMMAR_PATTERNS:
        matches = pattern.findall(text)
        if matches:
            score -= 10 * min(len(matches), 3)
            issues.append(f"Grammar: {description}")

    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    avg_sentence_length = len(text) / len(sentences) if sentences else 0
    if avg_sentence_length > 200:
        score -= 15
        issues.append("Sentences too long")
    if avg_sentence_length < 10:
        score -= 15
        issues.append("Sentences too short")

    run_ons = RUN_ON_PATTERN.findall(text)
    if run_ons:
        score -= 10 * min(len(run_ons), 2)
        issues.append("Run-on sentences detected")

    return ScoreDimension(dimension="quality", score=max(0, score), weight=0.25, issues=issues)


def score_tone(text: str, expected_tone: Tone = "professional") -> ScoreDimension:
    issues: list[str] = []
    score = 100
    lowered = text.lower()

    if text.count("!") > 3:
        score -= 10
        issues.append("Too many exclamation marks")

    if len(CAPS_WORD_PATTERN.findall(text)) > 2:
        score -= 15
        issues.append("Excessive use of ALL CAPS")

    if expected_tone == "professional":
        for word in INFORMAL_WORDS:
            if word in lowered:
                score -= 10
                issues.append(f'Informal language: "{word}"')
        if sum(1 for c in CONTRACTIONS if c in lowered) > 3:
            score -= 5
            issues.append("Too many contractions for professional tone")

    if expected_tone == "friendly":
        for phrase in FORMAL_PHRASES:
            if phrase in lowered:
                score -= 10
                issues.append(f'Too formal: "{phrase}"')
        if len(text) > 100 and not any(p in lowered for p in WARM_PHRASES):
            score -= 15
            issues.append("Lacks warmth for friendly tone")

    return ScoreDimension(dimension="tone", score=max(0, score), weight=0.2, issues=issues)


def score_completeness(text: str, required_elements: list[str] | None = None) -> ScoreDimension:
    issues: list[str] = []
    score = 100

    if len(text) > 100:
        if not CLOSING_PATTERN.search(text):
            score -= 10
            issues.append("Missing closing/sign-off")
        if not GREETING_PATTERN.search(text[:50]):
            score -= 10
            issues.append("Missing greeting")

    lowered = text.lower()
    for element in required_elements or []:
        if element.lower() not in lowered:
            score -= 20
            issues.append(f'Missing required element: "{element}"')

    if not SENTENCE_END_PATTERN.search(text.strip()):
        score -= 15
        issues.append("Incomplete last sentence")

    return ScoreDimension(dimension="completeness", score=max(0, score), weight=0.25, issues=issues)


def evaluate_l2(
    text: str,
    min_score: int = 60,
    weights: dict[str, float] | None = None,
    query: str | None = None,
    expected_tone: Tone = "professional",
    required_elements: list[str] | None = None,
) -> L2Result:
    """Score ``text`` and compare the weighted total with ``min_score``."""
    merged = {**DEFAULT_WEIGHTS, **(weights or {})}

    breakdown = [
        score_relevance(text, query),
        score_quality(text),
        score_tone(text, expected_tone),
        score_completeness(text, required_elements),
    ]
    for dim in breakdown:
        dim.weight = merged[dim.dimension]

    # Weights are relative; the total stays on the 0-100 scale
    weight_sum = sum(dim.weight for dim in breakdown) or 1.0
    total = sum(dim.score * dim.weight for dim in breakdown) / weight_sum
    recommendations = [
        f"Improve {dim.dimension}: {', '.join(dim.issues)}"
        for dim in breakdown
        if dim.score < RECOMMENDATION_THRESHOLD
    ]
    return L2Result(
        score=round(total),
        passed=total >= min_score,
        breakdown=breakdown,
        recommendations=recommendations,
    )
