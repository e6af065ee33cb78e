"""Runtime — bridges HTTP requests to engine execution.

Flattens the conversation, builds the engine option bundle from config
defaults and request overrides, runs the engine and hands its events to
the translator. Owns the success/failure accounting for each request.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from gateway.engine.base import EngineOptions
from gateway.errors import EngineRuntimeError, GatewayError
from gateway.flattener import extract_system, flatten
from gateway.translator import TranslationState, aggregate, format_sse, stream_events

if TYPE_CHECKING:
    from gateway.config import GatewayConfig
    from gateway.engine.base import Engine
    from gateway.schemas import MessagesRequest, MessagesResponse
    from gateway.stats import RequestStats

logger = logging.getLogger(__name__)

UPSTREAM_MARKER = "cc:"


def new_request_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def parse_upstream_credentials(header: str | None) -> dict[str, str]:
    """Extract per-request upstream credentials from an auth header.

    Header value: ``...cc:<token>!<base_url>``. Returns the engine env
    overrides, or an empty dict when the header carries none.
    """
    if not header or UPSTREAM_MARKER not in header:
        return {}

    payload = header[header.index(UPSTREAM_MARKER) + len(UPSTREAM_MARKER):]
    parts = payload.split("!")
    if len(parts) < 2 or not parts[0].strip() or not parts[1].strip():
        logger.debug("Ignoring malformed upstream credential header")
        return {}

    token, base_url = parts[0].strip(), parts[1].strip()
    logger.debug(f"Upstream credentials supplied: token={token[:10]}..., url={base_url}")
    return {"ANTHROPIC_AUTH_TOKEN": token, "ANTHROPIC_BASE_URL": base_url}


def build_options(
    request: MessagesRequest,
    config: GatewayConfig,
    system_prompt: str | None,
    env: dict[str, str],
) -> EngineOptions:
    """Merge config defaults with request overrides."""
    defaults = config.defaults

    max_thinking_tokens = request.max_thinking_tokens
    if max_thinking_tokens is None and defaults.enable_thinking:
        max_thinking_tokens = defaults.max_thinking_tokens

    return EngineOptions(
        model=request.model or defaults.model,
        cwd=request.cwd or defaults.cwd,
        permission_mode=request.permission_mode or defaults.permission_mode,
        max_turns=request.max_turns or defaults.max_turns,
        allowed_tools=list(defaults.allowed_tools),
        disallowed_tools=list(defaults.disallowed_tools),
        system_prompt=system_prompt,
        max_thinking_tokens=max_thinking_tokens,
        env=env,
        include_partial_messages=request.stream,
        setting_sources=list(defaults.setting_sources),
        max_tokens=request.max_tokens or defaults.max_tokens,
        temperature=request.temperature,
        top_p=request.top_p,
        top_k=request.top_k,
        debug=config.debug,
    )


@dataclass
class PreparedRun:
    """Everything needed to invoke the engine for one request."""

    request_id: str
    model: str
    message: dict[str, Any]
    options: EngineOptions


def prepare_run(
    request: MessagesRequest,
    config: GatewayConfig,
    request_id: str,
    env: dict[str, str] | None = None,
) -> PreparedRun:
    """Validate and flatten the request. Raises ``ValidationError``."""
    flattened = flatten(request.messages)
    system_prompt = extract_system(request.messages, request.system)
    options = build_options(request, config, system_prompt, env or {})

    logger.debug(
        f"[{request_id}] New request: model={options.model}, "
        f"messages={len(request.messages)}, stream={request.stream}, "
        f"parts={len(flattened.content)}"
    )
    return PreparedRun(
        request_id=request_id,
        model=options.model,
        message=flattened.to_engine_message(session_id=request_id),
        options=options,
    )


async def complete_run(engine: Engine, run: PreparedRun, stats: RequestStats) -> MessagesResponse:
    """Run the engine to completion and return the aggregated response."""
    cancel = asyncio.Event()
    events = engine.run(run.message, run.options, cancel)
    try:
        response = await aggregate(events, run.request_id, run.model)
    except asyncio.CancelledError:
        cancel.set()
        raise
    except GatewayError as e:
        stats.record_failure()
        logger.error(f"[{run.request_id}] Request failed: {e}")
        raise
    except Exception as e:
        stats.record_failure()
        logger.error(f"[{run.request_id}] Engine error: {e}", exc_info=True)
        raise EngineRuntimeError(str(e)) from e

    stats.record_success()
    logger.info(
        f"[{run.request_id}] Completed: stop_reason={response.stop_reason}, "
        f"input_tokens={response.usage.input_tokens}, "
        f"output_tokens={response.usage.output_tokens}"
    )
    return response


async def stream_run(engine: Engine, run: PreparedRun, stats: RequestStats) -> AsyncGenerator[str, None]:
    """Run the engine and yield SSE records as events arrive."""
    cancel = asyncio.Event()
    state = TranslationState()
    events = engine.run(run.message, run.options, cancel)

    failed = False
    sent = 0
    async with aclosing(stream_events(events, run.request_id, run.model, state, cancel)) as wire_events:
        async for event in wire_events:
            if event["type"] == "error":
                failed = True
            sent += 1
            yield format_sse(event)

    if failed:
        stats.record_failure()
        return

    stats.record_success()
    logger.info(
        f"[{run.request_id}] Streaming complete: events={sent}, "
        f"input_tokens={state.input_tokens}, output_tokens={state.output_tokens}"
    )
