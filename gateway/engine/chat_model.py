"""Chat model adapter — degraded engine backed by a single ChatAnthropic call.

No tools and no agent loop: the flattened turn goes to the model as one
HumanMessage. The streamed ``AIMessageChunk``s are reassembled into the
same block-lifecycle events, assistant message and terminal result the
agent engine produces, so the translator cannot tell the two apart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessageChunk, HumanMessage, SystemMessage

from gateway.engine.base import (
    AssistantMessage,
    EngineEvent,
    EngineOptions,
    ResultMessage,
    StreamEvent,
)

logger = logging.getLogger(__name__)

# Anthropic requires max_tokens to exceed the thinking budget.
THINKING_HEADROOM = 1024

_BLOCK_TYPES = {"text", "thinking"}


def _get_llm(options: EngineOptions) -> ChatAnthropic:
    """Create an Anthropic chat model from the option bundle.

    Credentials come from the per-request env overrides first, then the
    process environment.
    """
    api_key = (
        options.env.get("ANTHROPIC_AUTH_TOKEN")
        or options.env.get("ANTHROPIC_API_KEY")
        or os.environ.get("ANTHROPIC_API_KEY")
    )
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY environment variable is not set")

    kwargs: dict[str, Any] = dict(
        model=options.model,
        max_tokens=options.max_tokens,
        api_key=api_key,
        stream_usage=True,
    )
    base_url = options.env.get("ANTHROPIC_BASE_URL")
    if base_url:
        kwargs["base_url"] = base_url

    if options.max_thinking_tokens:
        kwargs["thinking"] = {"type": "enabled", "budget_tokens": options.max_thinking_tokens}
        kwargs["max_tokens"] = max(options.max_tokens, options.max_thinking_tokens + THINKING_HEADROOM)
    else:
        # Sampling overrides are rejected by the API while thinking is on.
        for name in ("temperature", "top_p", "top_k"):
            value = getattr(options, name)
            if value is not None:
                kwargs[name] = value

    return ChatAnthropic(**kwargs)


def _chunk_parts(content: str | list) -> list[dict[str, Any]]:
    """Normalize chunk content — a plain string or a list of indexed block dicts."""
    if isinstance(content, str):
        return [{"type": "text", "text": content, "index": 0}] if content else []
    parts = []
    for item in content:
        if isinstance(item, str):
            parts.append({"type": "text", "text": item, "index": 0})
        elif isinstance(item, dict):
            parts.append(item)
    return parts


class ChunkAssembler:
    """Rebuilds block-lifecycle events and the final message from model chunks."""

    def __init__(self) -> None:
        self.started = False
        self.current: int | None = None
        self.blocks: dict[int, dict[str, Any]] = {}
        self.input_tokens = 0
        self.output_tokens = 0
        self.stop_reason: str | None = None

    def feed(self, chunk: AIMessageChunk) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []

        usage = chunk.usage_metadata
        if usage:
            self.input_tokens += usage.get("input_tokens", 0)
            self.output_tokens += usage.get("output_tokens", 0)
        stop_reason = chunk.response_metadata.get("stop_reason")
        if stop_reason:
            self.stop_reason = stop_reason

        if not self.started:
            events.append(self._message_start())

        for part in _chunk_parts(chunk.content):
            if part.get("type") not in _BLOCK_TYPES:
                continue
            index = part.get("index", 0)
            if index != self.current:
                if self.current is not None:
                    events.append({"type": "content_block_stop", "index": self.current})
                self.current = index
                block = {"type": "text", "text": ""} if part["type"] == "text" else {"type": "thinking", "thinking": ""}
                self.blocks[index] = block
                events.append({"type": "content_block_start", "index": index, "content_block": dict(block)})
            events.extend(self._apply(index, part))

        return events

    def finish(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        if not self.started:
            events.append(self._message_start())
        if self.current is not None:
            events.append({"type": "content_block_stop", "index": self.current})
            self.current = None
        events.append(
            {
                "type": "message_delta",
                "delta": {"stop_reason": self.stop_reason or "end_turn", "stop_sequence": None},
                "usage": {"output_tokens": self.output_tokens},
            }
        )
        events.append({"type": "message_stop"})
        return events

    def segments(self) -> list[dict[str, Any]]:
        return [self.blocks[index] for index in sorted(self.blocks)]

    def text(self) -> str:
        return "".join(b["text"] for b in self.segments() if b["type"] == "text")

    def usage(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}

    def _message_start(self) -> dict[str, Any]:
        self.started = True
        return {
            "type": "message_start",
            "message": {"usage": {"input_tokens": self.input_tokens, "output_tokens": 0}},
        }

    def _apply(self, index: int, part: dict[str, Any]) -> list[dict[str, Any]]:
        block = self.blocks[index]
        deltas = []
        if part["type"] == "text" and part.get("text"):
            block["text"] += part["text"]
            deltas.append({"type": "text_delta", "text": part["text"]})
        elif part["type"] == "thinking":
            if part.get("thinking"):
                block["thinking"] += part["thinking"]
                deltas.append({"type": "thinking_delta", "thinking": part["thinking"]})
            if part.get("signature"):
                block["signature"] = block.get("signature", "") + part["signature"]
                deltas.append({"type": "signature_delta", "signature": part["signature"]})
        return [{"type": "content_block_delta", "index": index, "delta": d} for d in deltas]


class ChatModelEngine:
    name = "chat_model"

    async def run(
        self,
        message: dict[str, Any],
        options: EngineOptions,
        cancel: asyncio.Event,
    ) -> AsyncIterator[EngineEvent]:
        llm = _get_llm(options)
        prompt = []
        if options.system_prompt:
            prompt.append(SystemMessage(content=options.system_prompt))
        prompt.append(HumanMessage(content=message["message"]["content"]))

        if options.allowed_tools:
            logger.debug(f"chat_model engine ignores tools: {options.allowed_tools}")

        assembler = ChunkAssembler()
        started_at = time.monotonic()
        chunks = llm.astream(prompt)
        try:
            async for chunk in chunks:
                if cancel.is_set():
                    logger.info("Chat model run cancelled")
                    return
                for event in assembler.feed(chunk):
                    if options.include_partial_messages:
                        yield StreamEvent(event=event)
        finally:
            await chunks.aclose()

        for event in assembler.finish():
            if options.include_partial_messages:
                yield StreamEvent(event=event)

        yield AssistantMessage(content=assembler.segments(), model=options.model)
        yield ResultMessage(
            subtype="success",
            usage=assembler.usage(),
            num_turns=1,
            duration_ms=int((time.monotonic() - started_at) * 1000),
            result=assembler.text(),
        )
