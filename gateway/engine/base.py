"""Engine contract — what the gateway needs from an execution engine.

An engine takes one synthesized user message plus an ``EngineOptions``
bundle and yields, in order, raw per-block stream events, whole assistant
messages, and exactly one terminal ``ResultMessage``. Adapters translate a
concrete library's output into these types so the translator never sees
library objects.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, Union


@dataclass
class EngineOptions:
    """Configuration bundle for one engine invocation."""

    model: str
    cwd: str
    permission_mode: str
    max_turns: int
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None
    max_thinking_tokens: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    include_partial_messages: bool = False
    setting_sources: list[str] = field(default_factory=list)
    max_tokens: int = 4096
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    debug: bool = False


# ---------------------------------------------------------------------------
# Engine events
# ---------------------------------------------------------------------------


@dataclass
class StreamEvent:
    """A raw block-lifecycle event: ``{"type": "content_block_delta", ...}``."""

    event: dict[str, Any]


@dataclass
class AssistantMessage:
    """A complete assistant-authored message; ``content`` holds segment mappings."""

    content: list[dict[str, Any]]
    model: str | None = None


@dataclass
class ResultMessage:
    """Terminal notification for the invocation.

    subtype   — "success" | "error_max_turns" | "error_during_execution"
    usage     — token counts as reported by the engine, may be None
    """

    subtype: str
    is_error: bool = False
    usage: dict[str, Any] | None = None
    num_turns: int = 0
    duration_ms: int = 0
    total_cost_usd: float | None = None
    result: str | None = None


EngineEvent = Union[StreamEvent, AssistantMessage, ResultMessage]


class Engine(Protocol):
    """Anything that can run one invocation and stream its events.

    ``cancel`` is set by the caller when the client goes away; the engine
    must stop producing events at its next suspension point.
    """

    name: str

    def run(
        self,
        message: dict[str, Any],
        options: EngineOptions,
        cancel: asyncio.Event,
    ) -> AsyncIterator[EngineEvent]: ...
