"""
Static registry of integration actions the evaluation gate knows about.

Each side-effecting action declares:
- a pydantic argument schema (checked before any other tier runs),
- a human-readable label used in confirmation records,
- which argument carries the prose content that L1/L2 evaluate,
- a one-line summary template shown to the judge,
- whether it is irreversible (eligible for L3 escalation).

Actions missing from the registry are treated as non-side-effecting: they
skip the gate entirely.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument schemas
# ---------------------------------------------------------------------------


class _ActionArgs(BaseModel):
    model_config = ConfigDict(extra="allow")


class EmailArgs(_ActionArgs):
    to: str | list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)


class CalendarEventArgs(_ActionArgs):
    summary: str = Field(min_length=1)
    startDateTime: str = Field(min_length=1)
    endDateTime: str = Field(min_length=1)


class ChatMessageArgs(_ActionArgs):
    channel: str = Field(min_length=1)
    text: str = Field(min_length=1)


class NotionPageArgs(_ActionArgs):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class NotionAppendArgs(_ActionArgs):
    pageId: str = Field(min_length=1)
    content: str = Field(min_length=1)


class SheetAppendArgs(_ActionArgs):
    spreadsheetId: str = Field(min_length=1)
    values: Any


class SheetUpdateArgs(_ActionArgs):
    spreadsheetId: str = Field(min_length=1)
    range: str = Field(min_length=1)
    values: Any


class SpreadsheetCreateArgs(_ActionArgs):
    title: str = Field(min_length=1)


class DriveUploadArgs(_ActionArgs):
    name: str = Field(min_length=1)
    content: str = Field(min_length=1)


class DriveDeleteArgs(_ActionArgs):
    fileId: str = Field(min_length=1)


class DocCreateArgs(_ActionArgs):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class DocAppendArgs(_ActionArgs):
    documentId: str = Field(min_length=1)
    content: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionSpec:
    name: str
    label: str
    schema: type[BaseModel] | None = None
    content_field: str | None = None
    irreversible: bool = False
    summarize: Callable[[dict[str, Any]], str] | None = field(default=None, compare=False)

    def content_of(self, args: dict[str, Any]) -> str:
        """The prose L1/L2 evaluate. Falls back to the summary for data actions."""
        if self.content_field and isinstance(args.get(self.content_field), str):
            return args[self.content_field]
        return self.summary_of(args)

    def summary_of(self, args: dict[str, Any]) -> str:
        if self.summarize is None:
            return f"{self.label}: {args}"
        try:
            return self.summarize(args)
        except (KeyError, TypeError):
            return f"{self.label}: {args}"


def _recipients(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


_BUILTIN_ACTIONS = [
    ActionSpec(
        "send_email",
        "Send Email",
        EmailArgs,
        content_field="body",
        irreversible=True,
        summarize=lambda a: f"To: {_recipients(a['to'])}\nSubject: {a['subject']}\n\n{a['body']}",
    ),
    ActionSpec(
        "send_outlook_email",
        "Send Email (Outlook)",
        EmailArgs,
        content_field="body",
        irreversible=True,
        summarize=lambda a: (
            f"Outlook email to {_recipients(a['to'])}: {a['subject']}\n\n{a['body']}"
        ),
    ),
    ActionSpec(
        "create_calendar_event",
        "Create Calendar Event",
        CalendarEventArgs,
        summarize=lambda a: f"Event: {a['summary']} ({a['startDateTime']} - {a['endDateTime']})",
    ),
    ActionSpec(
        "send_slack_message",
        "Send Slack Message",
        ChatMessageArgs,
        content_field="text",
        irreversible=True,
        summarize=lambda a: f"Slack to #{a['channel']}: {str(a['text'])[:200]}",
    ),
    ActionSpec(
        "send_teams_message",
        "Send Teams Message",
        ChatMessageArgs,
        content_field="text",
        irreversible=True,
        summarize=lambda a: f"Teams message to {a['channel']}: {str(a['text'])[:200]}",
    ),
    ActionSpec(
        "create_notion_page",
        "Create Notion Page",
        NotionPageArgs,
        content_field="content",
        summarize=lambda a: f"Create Notion page: {a['title']}",
    ),
    ActionSpec(
        "append_to_notion",
        "Append to Notion",
        NotionAppendArgs,
        content_field="content",
        summarize=lambda a: f"Append to Notion page {a['pageId']}: {str(a['content'])[:100]}",
    ),
    ActionSpec(
        "append_to_sheet",
        "Append to Sheet",
        SheetAppendArgs,
        summarize=lambda a: f"Append {len(a.get('values') or [])} rows to {a['spreadsheetId']}",
    ),
    ActionSpec(
        "update_sheet",
        "Update Sheet",
        SheetUpdateArgs,
        summarize=lambda a: f"Update {a['range']} in {a['spreadsheetId']}",
    ),
    ActionSpec(
        "create_spreadsheet",
        "Create Spreadsheet",
        SpreadsheetCreateArgs,
        summarize=lambda a: f"Create spreadsheet: {a['title']}",
    ),
    ActionSpec(
        "upload_drive_file",
        "Upload to Drive",
        DriveUploadArgs,
        content_field="content",
        summarize=lambda a: f"Upload file: {a['name']}",
    ),
    ActionSpec(
        "delete_drive_file",
        "Delete from Drive",
        DriveDeleteArgs,
        irreversible=True,
        summarize=lambda a: f"Delete file: {a['fileId']}",
    ),
    ActionSpec(
        "create_doc",
        "Create Doc",
        DocCreateArgs,
        content_field="content",
        summarize=lambda a: f"Create doc: {a['title']}",
    ),
    ActionSpec(
        "append_to_doc",
        "Append to Doc",
        DocAppendArgs,
        content_field="content",
        summarize=lambda a: f"Append to doc {a['documentId']}: {str(a['content'])[:100]}",
    ),
]


class ActionRegistry:
    """Name -> ActionSpec lookup. Starts with the built-in side-effecting actions."""

    def __init__(self, actions: list[ActionSpec] | None = None):
        self._actions: dict[str, ActionSpec] = {}
        for spec in _BUILTIN_ACTIONS if actions is None else actions:
            self.register(spec)

    def register(self, spec: ActionSpec) -> None:
        if spec.name in self._actions:
            logger.debug(f"Replacing action spec '{spec.name}'")
        self._actions[spec.name] = spec

    def get(self, name: str) -> ActionSpec | None:
        return self._actions.get(name)

    def is_side_effect(self, name: str) -> bool:
        return name in self._actions

    def is_irreversible(self, name: str) -> bool:
        spec = self._actions.get(name)
        return bool(spec and spec.irreversible)

    def label(self, name: str) -> str:
        spec = self._actions.get(name)
        return spec.label if spec else name

    def names(self) -> list[str]:
        return list(self._actions)

    def validate_args(self, name: str, args: dict[str, Any]) -> list[str]:
        """
        Check args against the action's schema.

        Returns a list of "field: message" errors; empty when valid or when
        the action has no declared schema.
        """
        spec = self._actions.get(name)
        if spec is None or spec.schema is None:
            return []
        try:
            spec.schema.model_validate(args)
        except ValidationError as e:
            return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        return []


default_action_registry = ActionRegistry()
