"""Request/response models — the messages API contract between gateway and clients."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Tag

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]


# ---------------------------------------------------------------------------
# Content segments
# ---------------------------------------------------------------------------


class ImageSource(BaseModel):
    """Inline base64 bytes or a remote URL reference."""

    type: Literal["base64", "url"]
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class TextSegment(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageSegment(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseSegment(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = {}


class ToolResultSegment(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[Any] = ""
    is_error: bool = False


class ThinkingSegment(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str | None = None


class UnknownSegment(BaseModel):
    """Any segment type this gateway does not know. Kept so it can be ignored."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None


_KNOWN_SEGMENTS = {"text", "image", "tool_use", "tool_result", "thinking"}


def _segment_tag(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return kind if kind in _KNOWN_SEGMENTS else "unknown"


ContentSegment = Annotated[
    Union[
        Annotated[TextSegment, Tag("text")],
        Annotated[ImageSegment, Tag("image")],
        Annotated[ToolUseSegment, Tag("tool_use")],
        Annotated[ToolResultSegment, Tag("tool_result")],
        Annotated[ThinkingSegment, Tag("thinking")],
        Annotated[UnknownSegment, Tag("unknown")],
    ],
    Discriminator(_segment_tag),
]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class Turn(BaseModel):
    """One message of the conversation. ``system`` is only legal as the first turn."""

    role: Literal["user", "assistant", "system"]
    content: str | list[ContentSegment]


class MessagesRequest(BaseModel):
    """Body of ``POST /v1/messages``.

    Only ``messages`` is required. Agent fields (``cwd``, ``max_turns``,
    ``permission_mode``, ``max_thinking_tokens``) override the configured
    defaults for this request.
    """

    model: str | None = None
    messages: list[Turn]
    system: str | list[TextSegment] | None = None
    stream: bool = False
    max_tokens: int | None = None
    max_thinking_tokens: int | None = None
    cwd: str | None = None
    max_turns: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    permission_mode: PermissionMode | None = None


class CountTokensRequest(BaseModel):
    messages: list[Turn] = []
    system: str | list[TextSegment] | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None


class MessagesResponse(BaseModel):
    """Aggregated (non-streaming) reply.

    ``content`` holds the engine's segments as produced, unmodified.
    """

    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    content: list[dict[str, Any]]
    model: str
    stop_reason: str
    usage: Usage
