"""
Resolve ``{{nodeId.field}}`` tokens against completed node outputs.

Supports nested paths and list indices:

    {{trigger.message}}
    {{draft.content}}
    {{lookup.data.contacts[0].email}}

Tokens whose node or field cannot be found are left in place unchanged, so
an unresolved token stays visible to the gate's placeholder check.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{([^.}]+)\.([^}]+)\}\}")
_INDEX_PATTERN = re.compile(r"^([^\[]*)((?:\[\d+\])+)$")

_MISSING = object()


def _field_view(output: Any) -> dict[str, Any]:
    """Flatten a NodeOutput into the field names tokens may use."""
    kind = getattr(output, "type", None)
    if kind == "trigger-result":
        payload = output.payload
        return {**payload, "payload": payload, "message": payload.get("message")}
    if kind == "ai-response":
        return {
            "content": output.content,
            "model": output.model,
            "usage": output.usage.model_dump(),
            "tokensIn": output.usage.input_tokens,
            "tokensOut": output.usage.output_tokens,
        }
    if kind == "action-result":
        return {
            "action": output.action,
            "success": output.success,
            "data": output.data,
            "error": output.error,
        }
    if kind == "branch-result":
        return {"selected_handle": output.selected_handle, "selectedHandle": output.selected_handle}
    if isinstance(output, dict):
        return output
    return {}


def _split_path(path: str) -> list[str | int]:
    parts: list[str | int] = []
    for segment in path.split("."):
        match = _INDEX_PATTERN.match(segment)
        if match:
            if match.group(1):
                parts.append(match.group(1))
            parts.extend(int(i) for i in re.findall(r"\[(\d+)\]", match.group(2)))
        elif segment.isdigit():
            parts.append(int(segment))
        else:
            parts.append(segment)
    return parts


def traverse(value: Any, parts: list[str | int]) -> Any:
    """Walk ``parts`` into nested dicts and lists. Returns _MISSING on a miss."""
    for part in parts:
        if isinstance(part, int):
            if isinstance(value, list | tuple) and -len(value) <= part < len(value):
                value = value[part]
                continue
            return _MISSING
        if isinstance(value, dict) and part in value:
            value = value[part]
            continue
        return _MISSING
    return value


def lookup(node_outputs: dict[str, Any], node_id: str, path: str) -> Any:
    output = node_outputs.get(node_id)
    if output is None:
        return _MISSING
    return traverse(_field_view(output), _split_path(path))


def resolve_variables(text: str, node_outputs: dict[str, Any]) -> str:
    """Replace every resolvable token in ``text``."""
    if not text or "{{" not in text:
        return text

    def _replace(match: re.Match[str]) -> str:
        node_id, path = match.group(1).strip(), match.group(2).strip()
        value = lookup(node_outputs, node_id, path)
        if value is _MISSING or value is None:
            logger.debug(f"Unresolved token {match.group(0)}")
            return match.group(0)
        if isinstance(value, dict | list):
            return json.dumps(value, default=str)
        return str(value)

    return TOKEN_PATTERN.sub(_replace, text)


def resolve_in_object(obj: dict[str, Any], node_outputs: dict[str, Any]) -> dict[str, Any]:
    """Resolve tokens in the string values of ``obj``, recursing into dicts and lists."""

    def _resolve(value: Any) -> Any:
        if isinstance(value, str):
            return resolve_variables(value, node_outputs)
        if isinstance(value, dict):
            return {k: _resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_resolve(v) for v in value]
        return value

    return {key: _resolve(value) for key, value in obj.items()}


def has_tokens(text: str) -> bool:
    return bool(TOKEN_PATTERN.search(text))
