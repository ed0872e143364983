"""
Approval protocol for side-effecting actions.

When the evaluation gate requires approval, the action node does not run.
The engine emits a ConfirmationRequest and ends the run. The caller stores
the request (keyed by run id and node id), shows it to a human, and later
comes back with an ApprovalResponse:

1. Action node: gate says requires_approval -> ConfirmationRequest
2. Engine: emits node-awaiting-confirmation, finishes the run cleanly
3. Human: approves, approves with edits, or rejects
4. Resume: the decision is turned into a retry seed (see graph.resume)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class ApprovalDecision(StrEnum):
    """What the human decided."""

    APPROVED = "approved"
    APPROVED_WITH_EDITS = "approved_with_edits"
    REJECTED = "rejected"


def args_fingerprint(args: dict[str, Any]) -> str:
    """sha256 of the canonical JSON form of an argument payload."""
    canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class ConfirmationRequest:
    """
    Pending approval for one action node.

    This is what the engine produces when a side effect needs a human.
    """

    run_id: str
    node_id: str
    action: str
    args: dict[str, Any]

    # Display
    title: str = ""
    conversation_id: str | None = None

    # Gate output, serialised
    verdict: dict[str, Any] = field(default_factory=dict)

    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def request_id(self) -> str:
        return f"{self.run_id}:{self.node_id}"

    @property
    def fingerprint(self) -> str:
        return args_fingerprint(self.args)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "action": self.action,
            "args": self.args,
            "title": self.title,
            "conversation_id": self.conversation_id,
            "verdict": self.verdict,
            "fingerprint": self.fingerprint,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfirmationRequest:
        return cls(
            run_id=data["run_id"],
            node_id=data["node_id"],
            action=data["action"],
            args=dict(data.get("args") or {}),
            title=data.get("title", ""),
            conversation_id=data.get("conversation_id"),
            verdict=dict(data.get("verdict") or {}),
            created_at=data.get("created_at") or datetime.now(UTC).isoformat(),
        )


@dataclass
class ApprovalResponse:
    """
    Human's answer to a ConfirmationRequest.

    ``edited_args`` is only meaningful for APPROVED_WITH_EDITS; it replaces
    the recorded arguments wholesale.
    """

    request_id: str
    decision: ApprovalDecision
    edited_args: dict[str, Any] | None = None
    note: str = ""

    def effective_args(self, request: ConfirmationRequest) -> dict[str, Any]:
        if self.decision == ApprovalDecision.APPROVED_WITH_EDITS:
            if self.edited_args is None:
                raise ValueError("approved_with_edits requires edited_args")
            return dict(self.edited_args)
        return dict(request.args)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "decision": self.decision.value,
            "edited_args": self.edited_args,
            "note": self.note,
        }
