"""Shared flowgate configuration utilities.

Centralises reading of ~/.flowgate/configuration.json so that the runtime,
the evaluation gate and the CLI share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "anthropic/claude-haiku-4-5-20251001"
DEFAULT_MAX_TOKENS = 1024
DEFAULT_MAX_STEPS = 10
DEFAULT_HISTORY_WINDOW = 20
DEFAULT_L2_MIN_SCORE = 60
DEFAULT_AUTO_SEND_THRESHOLD = 85
DEFAULT_JUDGE_TIMEOUT_SECONDS = 20.0

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWGATE_CONFIG_FILE = Path.home() / ".flowgate" / "configuration.json"


def get_flowgate_config() -> dict[str, Any]:
    """Load flowgate configuration from ~/.flowgate/configuration.json."""
    if not FLOWGATE_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWGATE_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _section(name: str) -> dict[str, Any]:
    section = get_flowgate_config().get(name, {})
    return section if isinstance(section, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = _section("llm")
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_judge_model() -> str:
    """Return the model used by the L3 judge, defaulting to the preferred model."""
    return _section("llm").get("judge_model") or get_preferred_model()


def get_max_tokens() -> int:
    return _section("llm").get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable specified in configuration."""
    api_key_env_var = _section("llm").get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


# ---------------------------------------------------------------------------
# Dataclasses shared across the runtime
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Model configuration loaded from ~/.flowgate/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.3
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None


@dataclass
class EvalConfig:
    """Global defaults for the evaluation gate. Agent rules override these."""

    enable_l1: bool = field(default_factory=lambda: _section("eval").get("enable_l1", True))
    enable_l2: bool = field(default_factory=lambda: _section("eval").get("enable_l2", True))
    enable_l3: bool = field(default_factory=lambda: _section("eval").get("enable_l3", True))
    l2_min_score: int = field(
        default_factory=lambda: _section("eval").get("l2_min_score", DEFAULT_L2_MIN_SCORE)
    )
    l3_auto_send_threshold: int = field(
        default_factory=lambda: _section("eval").get(
            "l3_auto_send_threshold", DEFAULT_AUTO_SEND_THRESHOLD
        )
    )
    judge_timeout_seconds: float = field(
        default_factory=lambda: _section("eval").get(
            "judge_timeout_seconds", DEFAULT_JUDGE_TIMEOUT_SECONDS
        )
    )
    judge_model: str = field(default_factory=get_judge_model)


@dataclass
class EngineConfig:
    """Traversal limits and context window sizes."""

    max_steps: int = field(
        default_factory=lambda: _section("engine").get("max_steps", DEFAULT_MAX_STEPS)
    )
    history_window: int = field(
        default_factory=lambda: _section("engine").get("history_window", DEFAULT_HISTORY_WINDOW)
    )
    max_duration_seconds: float | None = field(
        default_factory=lambda: _section("engine").get("max_duration_seconds")
    )


@dataclass
class ServerConfig:
    host: str = field(default_factory=lambda: _section("server").get("host", "127.0.0.1"))
    port: int = field(default_factory=lambda: _section("server").get("port", 8080))
