"""Event translator — turns engine events into the client-facing messages API.

Two modes:

    stream_events()  — one wire event per relevant engine event, for SSE
    aggregate()      — drain the engine and build a single MessagesResponse

Streaming keeps a small ``TranslationState`` per request: which content
block indices are open, whether a message is in flight, and running token
counters.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from gateway.engine.base import AssistantMessage, EngineEvent, ResultMessage, StreamEvent
from gateway.errors import EngineProtocolError, GatewayError, error_body
from gateway.schemas import MessagesResponse, Usage

logger = logging.getLogger(__name__)

_AGGREGATED_SEGMENTS = {"text", "thinking", "tool_use"}


@dataclass
class TranslationState:
    open_blocks: set[int] = field(default_factory=set)
    message_started: bool = False
    result_seen: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


def format_sse(event: dict[str, Any]) -> str:
    """Render one wire event as an SSE record."""
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"


def stop_reason_for(result: ResultMessage) -> str:
    """Map the engine's terminal status to a client stop reason."""
    if result.subtype == "error_max_turns":
        return "max_turns"
    if result.is_error or result.subtype != "success":
        return "error"
    return "end_turn"


def _usage_from(raw: dict[str, Any] | None) -> Usage:
    raw = raw or {}
    return Usage(
        input_tokens=raw.get("input_tokens") or 0,
        output_tokens=raw.get("output_tokens") or 0,
        cache_creation_input_tokens=raw.get("cache_creation_input_tokens"),
        cache_read_input_tokens=raw.get("cache_read_input_tokens"),
    )


async def _close(events: AsyncIterator[EngineEvent]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()


# ---------------------------------------------------------------------------
# Streaming mode
# ---------------------------------------------------------------------------


class StreamTranslator:
    """Per-request state machine from engine events to wire events.

    ``translate`` returns the wire event to emit, or None when the engine
    event produces nothing on the wire.
    """

    def __init__(self, request_id: str, model: str, state: TranslationState | None = None):
        self.request_id = request_id
        self.model = model
        self.state = state or TranslationState()

    def translate(self, item: EngineEvent) -> dict[str, Any] | None:
        match item:
            case StreamEvent():
                return self._translate_stream_event(item.event)
            case ResultMessage():
                self.state.result_seen = True
                usage = item.usage or {}
                self.state.input_tokens = usage.get("input_tokens") or 0
                self.state.output_tokens = usage.get("output_tokens") or 0
                return None
            case AssistantMessage():
                # Already delivered block by block.
                return None
            case _:
                raise EngineProtocolError(f"unrecognized engine event: {type(item).__name__}")

    def _translate_stream_event(self, event: dict[str, Any]) -> dict[str, Any] | None:
        if not isinstance(event, dict) or "type" not in event:
            raise EngineProtocolError(f"engine stream event has no type: {event!r}")

        state = self.state
        kind = event["type"]
        match kind:
            case "message_start":
                state.open_blocks.clear()
                state.message_started = True
                usage = (event.get("message") or {}).get("usage") or {}
                state.input_tokens = usage.get("input_tokens") or 0
                return {
                    "type": "message_start",
                    "message": {
                        "id": self.request_id,
                        "type": "message",
                        "role": "assistant",
                        "content": [],
                        "model": self.model,
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": state.input_tokens, "output_tokens": 0},
                    },
                }
            case "content_block_start":
                index = event.get("index", 0)
                if index in state.open_blocks:
                    logger.debug(f"[{self.request_id}] Suppressed replayed start for block {index}")
                    return None
                state.open_blocks.add(index)
                return {
                    "type": "content_block_start",
                    "index": index,
                    "content_block": event.get("content_block"),
                }
            case "content_block_delta":
                return {
                    "type": "content_block_delta",
                    "index": event.get("index", 0),
                    "delta": event.get("delta"),
                }
            case "content_block_stop":
                index = event.get("index", 0)
                state.open_blocks.discard(index)
                return {"type": "content_block_stop", "index": index}
            case "message_delta":
                usage = event.get("usage") or {}
                if usage.get("output_tokens") is not None:
                    state.output_tokens = usage["output_tokens"]
                return {
                    "type": "message_delta",
                    "delta": event.get("delta") or {},
                    "usage": usage,
                }
            case "message_stop":
                state.message_started = False
                return {"type": "message_stop"}
            case _:
                logger.debug(f"[{self.request_id}] Skipping engine event '{kind}'")
                return None


async def stream_events(
    events: AsyncIterator[EngineEvent],
    request_id: str,
    model: str,
    state: TranslationState | None = None,
    cancel: asyncio.Event | None = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """Yield wire events for one engine invocation.

    A failure while iterating, or an engine stream that ends without its
    terminal result, becomes a single ``error`` event that ends the stream.
    Cancellation (client gone) signals the engine and propagates
    without an error event.
    """
    translator = StreamTranslator(request_id, model, state)
    try:
        async for item in events:
            wire = translator.translate(item)
            if wire is not None:
                yield wire
    except (asyncio.CancelledError, GeneratorExit):
        logger.info(f"[{request_id}] Stream cancelled by caller")
        if cancel is not None:
            cancel.set()
        raise
    except Exception as e:
        logger.error(f"[{request_id}] Streaming error: {e}", exc_info=True)
        error_type = e.error_type if isinstance(e, GatewayError) else "api_error"
        yield error_body(error_type, str(e))
    else:
        if not translator.state.result_seen:
            logger.error(f"[{request_id}] Engine stream ended without a result message")
            yield error_body("api_error", "no result message received")
    finally:
        await _close(events)

    if translator.state.message_started:
        logger.warning(f"[{request_id}] Engine stream ended without message_stop")


# ---------------------------------------------------------------------------
# Aggregated mode
# ---------------------------------------------------------------------------


async def aggregate(
    events: AsyncIterator[EngineEvent],
    request_id: str,
    model: str,
) -> MessagesResponse:
    """Drain the engine and build the full response.

    Raises ``EngineProtocolError`` when the engine never reports a result;
    partial output is never returned.
    """
    content: list[dict[str, Any]] = []
    result: ResultMessage | None = None

    try:
        async for item in events:
            match item:
                case AssistantMessage():
                    content.extend(
                        segment for segment in item.content
                        if segment.get("type") in _AGGREGATED_SEGMENTS
                    )
                case ResultMessage():
                    result = item
                case StreamEvent():
                    continue
                case _:
                    raise EngineProtocolError(f"unrecognized engine event: {type(item).__name__}")
    finally:
        await _close(events)

    if result is None:
        raise EngineProtocolError("no result message received")

    return MessagesResponse(
        id=request_id,
        content=content or [{"type": "text", "text": ""}],
        model=model,
        stop_reason=stop_reason_for(result),
        usage=_usage_from(result.usage),
    )
