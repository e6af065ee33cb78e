"""Claude Agent SDK adapter — the primary execution engine.

The SDK runs a full agent loop (tools, multiple model calls) per ``query``.
The synthesized user message is fed as the only item of the SDK's streaming
input, and SDK messages are mapped onto the gateway's engine events.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from claude_agent_sdk import (
    AssistantMessage as SDKAssistantMessage,
    ClaudeAgentOptions,
    ResultMessage as SDKResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    query,
)
from claude_agent_sdk.types import StreamEvent as SDKStreamEvent

from gateway.engine.base import (
    AssistantMessage,
    EngineEvent,
    EngineOptions,
    ResultMessage,
    StreamEvent,
)

logger = logging.getLogger(__name__)


def build_sdk_options(options: EngineOptions) -> ClaudeAgentOptions:
    """Translate the gateway's option bundle into ``ClaudeAgentOptions``."""
    kwargs: dict[str, Any] = dict(
        cwd=options.cwd,
        model=options.model,
        permission_mode=options.permission_mode,
        allowed_tools=list(options.allowed_tools),
        disallowed_tools=list(options.disallowed_tools),
        max_turns=options.max_turns,
        include_partial_messages=options.include_partial_messages,
        setting_sources=list(options.setting_sources),
        env=dict(options.env),
    )
    if options.system_prompt is not None:
        kwargs["system_prompt"] = options.system_prompt
    if options.max_thinking_tokens is not None:
        kwargs["max_thinking_tokens"] = options.max_thinking_tokens
    if options.debug:
        kwargs["stderr"] = lambda line: logger.debug(f"[agent stderr] {line}")
    return ClaudeAgentOptions(**kwargs)


def block_to_segment(block: Any) -> dict[str, Any] | None:
    match block:
        case TextBlock():
            return {"type": "text", "text": block.text}
        case ThinkingBlock():
            return {"type": "thinking", "thinking": block.thinking, "signature": block.signature}
        case ToolUseBlock():
            return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
        case _:
            return None


def to_engine_event(sdk_msg: Any) -> EngineEvent | None:
    """Map one SDK message to an engine event; None for messages the gateway ignores."""
    match sdk_msg:
        case SDKStreamEvent():
            return StreamEvent(event=sdk_msg.event)
        case SDKAssistantMessage():
            segments = [block_to_segment(block) for block in sdk_msg.content]
            return AssistantMessage(
                content=[s for s in segments if s is not None],
                model=sdk_msg.model,
            )
        case SDKResultMessage():
            return ResultMessage(
                subtype=sdk_msg.subtype,
                is_error=sdk_msg.is_error,
                usage=sdk_msg.usage,
                num_turns=sdk_msg.num_turns,
                duration_ms=sdk_msg.duration_ms,
                total_cost_usd=sdk_msg.total_cost_usd,
                result=sdk_msg.result,
            )
        case _:
            # System and tool-result user messages stay inside the agent loop.
            return None


async def _single_message(message: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
    yield message


class AgentSDKEngine:
    name = "agent_sdk"

    async def run(
        self,
        message: dict[str, Any],
        options: EngineOptions,
        cancel: asyncio.Event,
    ) -> AsyncIterator[EngineEvent]:
        sdk_options = build_sdk_options(options)
        logger.info(
            f"Starting agent run: model={options.model}, cwd={options.cwd}, "
            f"max_turns={options.max_turns}, partial={options.include_partial_messages}"
        )

        messages = query(prompt=_single_message(message), options=sdk_options)
        try:
            async for sdk_msg in messages:
                if cancel.is_set():
                    logger.info("Agent run cancelled")
                    return
                event = to_engine_event(sdk_msg)
                if event is not None:
                    yield event
        finally:
            await messages.aclose()
