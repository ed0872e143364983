"""
Deterministic branch predicates.

A branch node lists candidate branches, each with a handle and a predicate
written in a small vocabulary:

    "contains refund"       substring of the last output (case-insensitive)
    "equals yes"            whole last output, trimmed, case-insensitive
    "is empty"              last output blank
    "is not empty"          last output non-blank
    "true" / "yes" / "always"
    "expr: len(output) > 200 and 'urgent' in output.lower()"
    "else" / "default" / "otherwise" / ...   catch-all

``{{nodeId.field}}`` tokens in predicates are resolved first. Catch-alls
only win when no other branch matched, regardless of their position. The
whole evaluation is a pure function of its inputs so branch selection
replays identically on resume.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from flowgate.graph.safe_eval import safe_eval
from flowgate.graph.variables import resolve_variables

logger = logging.getLogger(__name__)

CATCH_ALL_PATTERNS = {
    "default",
    "else",
    "other",
    "otherwise",
    "fallback",
    "catch all",
    "catch-all",
    "catchall",
    "no match",
    "none of the above",
}

_CONTAINS = re.compile(r"^contains?\s+[\"']?(.+?)[\"']?\s*$", re.IGNORECASE)
_EQUALS = re.compile(r"^equals?\s+[\"']?(.+?)[\"']?\s*$", re.IGNORECASE)


@dataclass
class Branch:
    handle: str
    when: str


def is_catch_all(predicate: str) -> bool:
    return predicate.lower().strip() in CATCH_ALL_PATTERNS


def evaluate_predicate(predicate: str, subject: str, scope: dict[str, Any]) -> bool:
    """Evaluate one non-catch-all predicate against the subject text."""
    raw = predicate.strip()
    text = raw.lower()

    if text.startswith("expr:"):
        try:
            return bool(safe_eval(raw[5:], scope))
        except (ValueError, TypeError, ZeroDivisionError) as e:
            logger.warning(f"Branch expression failed: {raw[5:]!r}: {e}")
            return False

    match = _CONTAINS.match(raw)
    if match:
        return match.group(1).lower() in subject.lower()

    match = _EQUALS.match(raw)
    if match:
        return subject.strip().lower() == match.group(1).strip().lower()

    if text in ("is_empty", "is empty"):
        return not subject.strip()
    if text in ("is_not_empty", "is not empty"):
        return bool(subject.strip())
    if text in ("true", "yes", "always"):
        return True

    logger.debug(f"Unrecognised branch predicate {raw!r}, treating as false")
    return False


def select_branch(
    branches: list[Branch],
    subject: str,
    node_outputs: dict[str, Any],
    scope: dict[str, Any] | None = None,
    default: str | None = None,
) -> str | None:
    """
    Return the handle of the first matching branch.

    Order: non-catch-all branches in declaration order, then the first
    catch-all, then ``default``. None when nothing applies.
    """
    scope = scope or {}
    catch_all: str | None = None
    for branch in branches:
        predicate = resolve_variables(branch.when, node_outputs)
        if is_catch_all(predicate):
            catch_all = catch_all or branch.handle
            continue
        if evaluate_predicate(predicate, subject, scope):
            return branch.handle
    return catch_all or default
