"""Agent definition: the per-agent settings a run executes under."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from flowgate.eval.gate import EvalRules


class AgentSpec(BaseModel):
    """
    An agent as the surrounding application stores it.

    ``max_steps`` and ``eval_rules`` override the global engine and gate
    defaults for this agent's runs.
    """

    id: str = "agent"
    name: str = "Agent"
    system_prompt: str = Field(default="", alias="systemPrompt")
    model: str | None = None
    temperature: float | None = None
    max_steps: int | None = Field(default=None, alias="maxSteps", ge=1)
    eval_rules: EvalRules = Field(default_factory=EvalRules, alias="evalRules")

    model_config = ConfigDict(populate_by_name=True, extra="allow")
