"""
Failure taxonomy for flow execution.

Every error that can end (or locally abort) a run derives from FlowError and
carries a stable ``kind`` string. The kind is what a caller sees in a
``flow-error`` event, so it must never change once published.
"""

from __future__ import annotations

from typing import Any


class FlowError(Exception):
    """Base class for all engine errors."""

    kind = "FlowError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class GraphInputError(FlowError):
    """Malformed graph or invocation input. Fatal, rejected before execution."""

    kind = "GraphInputError"

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid graph input")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": list(self.errors)}


class RetrySeedError(GraphInputError):
    """A retry seed is missing cached outputs for required upstream nodes."""

    def __init__(self, retry_from_node_id: str, missing: list[str]):
        self.retry_from_node_id = retry_from_node_id
        self.missing = list(missing)
        super().__init__(
            f"Cannot retry from '{retry_from_node_id}': no previous output for "
            f"upstream node(s) {', '.join(self.missing)}"
        )


class NodeExecutionError(FlowError):
    """A single node executor failed."""

    kind = "NodeExecutionError"

    def __init__(self, message: str, node_id: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.node_id = node_id
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "node_id": self.node_id, "retryable": self.retryable}


class GateBlockError(FlowError):
    """Hard block from the schema or L1 tier. The action is never attempted."""

    kind = "GateBlockError"

    def __init__(self, reason: str, verdict: Any = None):
        super().__init__(reason)
        self.verdict = verdict


class BudgetExceededError(FlowError):
    """Step count or wall-clock budget exhausted."""

    kind = "BudgetExceededError"

    def __init__(self, limit: float, reason: str = "max_steps"):
        self.limit = limit
        self.reason = reason
        if reason == "max_duration":
            message = f"Run exceeded its time budget of {limit}s"
        else:
            message = f"Run exceeded its step budget of {int(limit)} node executions"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason, "limit": self.limit}


class CancellationError(FlowError):
    """The run was cancelled between node executions."""

    kind = "CancellationError"

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)
