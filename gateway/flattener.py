"""Conversation flattener — collapses a multi-turn request into one engine input.

The execution engine only accepts a single user turn per invocation, so
prior turns are replayed as an escaped, clearly delimited history block
ahead of the current question:

    <conversation_history>
    ...context-only instruction...
    <user>
    Hi
    </user>
    <assistant>
    Hello
    </assistant>
    </conversation_history>

    <current_question>
    What's 2+2?
    </current_question>

Images attached to the current turn travel alongside as real image segments.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from xml.sax.saxutils import escape

from gateway.errors import ValidationError
from gateway.schemas import (
    ImageSegment,
    TextSegment,
    ThinkingSegment,
    ToolResultSegment,
    ToolUseSegment,
)

if TYPE_CHECKING:
    from gateway.schemas import Turn

PREVIEW_LIMIT = 200
THINKING_PREVIEW_LIMIT = 100

HISTORY_PREAMBLE = (
    "This is the previous conversation for context. You should be aware of it,\n"
    "but respond ONLY to the <current_question> below."
)

_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}


@dataclass(frozen=True)
class FlattenedInput:
    """The single synthesized user turn handed to the engine.

    Parts are read-only views; ``to_message`` hands out independent copies.
    """

    content: tuple[Mapping[str, Any], ...]
    role: str = "user"

    def to_message(self) -> dict[str, Any]:
        return {"role": self.role, "content": [copy.deepcopy(dict(part)) for part in self.content]}

    def to_engine_message(self, session_id: str) -> dict[str, Any]:
        """Envelope for the engine's streaming input channel."""
        return {
            "type": "user",
            "message": self.to_message(),
            "parent_tool_use_id": None,
            "session_id": session_id,
        }


# ---------------------------------------------------------------------------
# Textual projection
# ---------------------------------------------------------------------------


def escape_markup(text: str) -> str:
    """Replace ``& < > " '`` with their named entities."""
    return escape(text, _QUOTE_ENTITIES)


def _preview(value: Any, limit: int = PREVIEW_LIMIT) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return value[:limit]


def _render_segment(segment) -> str:
    match segment:
        case TextSegment():
            return segment.text
        case ToolUseSegment():
            line = f"[Used tool: {segment.name} with id={segment.id}]"
            if segment.input:
                line += f" input={_preview(segment.input)}"
            return line
        case ToolResultSegment():
            label = "Tool error" if segment.is_error else "Tool result"
            return f"[{label} for {segment.tool_use_id}]: {_preview(segment.content)}"
        case ImageSegment():
            return "[Image attached]"
        case ThinkingSegment():
            return f"[Thinking: {segment.thinking[:THINKING_PREVIEW_LIMIT]}...]"
        case _:
            # Unrecognized segment types are skipped.
            return ""


def project_text(turn: Turn) -> str:
    """Lossy single-string view of a turn, used for history and the current question."""
    if isinstance(turn.content, str):
        return turn.content
    rendered = (_render_segment(segment) for segment in turn.content)
    return "\n".join(part for part in rendered if part)


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def extract_system(turns: list[Turn], system: str | list[TextSegment] | None = None) -> str | None:
    """Resolve the system instruction for a request.

    An explicit ``system`` field wins over a leading ``system`` turn.
    """
    if system is not None:
        if isinstance(system, str):
            return system
        return "\n".join(segment.text for segment in system)

    if turns and turns[0].role == "system":
        first = turns[0]
        if isinstance(first.content, str):
            return first.content
        return "\n".join(s.text for s in first.content if isinstance(s, TextSegment))
    return None


def render_history(history: list[Turn]) -> str:
    lines = ["<conversation_history>", HISTORY_PREAMBLE, ""]
    for turn in history:
        tag = "user" if turn.role == "user" else "assistant"
        lines.append(f"<{tag}>")
        lines.append(escape_markup(project_text(turn)))
        lines.append(f"</{tag}>")
    lines.append("</conversation_history>")
    return "\n".join(lines)


def render_current(turn: Turn) -> str:
    return f"<current_question>\n{project_text(turn)}\n</current_question>"


def flatten(turns: list[Turn]) -> FlattenedInput:
    """Build the engine input for a request's turn list.

    Raises ``ValidationError`` when the list is empty or the last turn is not
    from the user.
    """
    conversation = turns[1:] if turns and turns[0].role == "system" else turns
    if not conversation:
        raise ValidationError("messages cannot be empty")

    *history, current = conversation
    if current.role != "user":
        raise ValidationError("last turn must be user")
    history = [turn for turn in history if turn.role != "system"]

    content: list[dict[str, Any]] = []
    if history:
        content.append({"type": "text", "text": render_history(history)})
    content.append({"type": "text", "text": render_current(current)})

    if not isinstance(current.content, str):
        for segment in current.content:
            if isinstance(segment, ImageSegment):
                content.append(segment.model_dump(exclude_none=True))

    return FlattenedInput(content=tuple(MappingProxyType(part) for part in content))
