"""
Shared fixtures for gateway tests.
"""

import pytest

from gateway.config import GatewayConfig
from gateway.engine.base import AssistantMessage, ResultMessage, StreamEvent
from gateway.schemas import Turn
from gateway.stats import RequestStats


class ScriptedEngine:
    """Engine double that replays a fixed list of events.

    Records every invocation and whether its event stream was closed.
    """

    name = "scripted"

    def __init__(self, events=(), error: Exception | None = None):
        self.events = list(events)
        self.error = error
        self.calls = []
        self.cancel = None
        self.closed = False

    async def run(self, message, options, cancel):
        self.calls.append((message, options))
        self.cancel = cancel
        try:
            for event in self.events:
                yield event
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


@pytest.fixture
def scripted_engine():
    """Factory for ScriptedEngine.

    Usage:
        engine = scripted_engine([StreamEvent(...), ResultMessage(...)])
        engine = scripted_engine([...], error=RuntimeError("boom"))
    """
    def _make(events=(), error=None):
        return ScriptedEngine(events, error)
    return _make


@pytest.fixture
def make_turns():
    """Build Turn models from (role, content) pairs."""
    def _make(*pairs):
        return [Turn(role=role, content=content) for role, content in pairs]
    return _make


@pytest.fixture
def gateway_config():
    return GatewayConfig()


@pytest.fixture
def stats():
    return RequestStats()


@pytest.fixture
def text_reply_events():
    """A complete single-block streamed reply: "Hello" with usage 12 in / 5 out."""
    return [
        StreamEvent({"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 0}}}),
        StreamEvent({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        StreamEvent({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}),
        StreamEvent({"type": "content_block_stop", "index": 0}),
        StreamEvent({"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 5}}),
        StreamEvent({"type": "message_stop"}),
        AssistantMessage(content=[{"type": "text", "text": "Hello"}]),
        ResultMessage(subtype="success", usage={"input_tokens": 12, "output_tokens": 5}, num_turns=1),
    ]
