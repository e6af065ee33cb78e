"""
Tests for gateway.engine.chat_model — ChatAnthropic chunks to engine events.
"""

import asyncio

import pytest
from langchain_core.messages import AIMessageChunk

from gateway.engine import chat_model
from gateway.engine.base import AssistantMessage, EngineOptions, ResultMessage, StreamEvent
from gateway.engine.chat_model import ChatModelEngine, ChunkAssembler, _get_llm


def usage(input_tokens, output_tokens):
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def make_options(**overrides):
    values = dict(model="claude-x", cwd="/tmp", permission_mode="default", max_turns=1)
    values.update(overrides)
    return EngineOptions(**values)


class FakeChatModel:
    """Stands in for ChatAnthropic; ``astream`` replays fixed chunks."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.prompts = []

    async def astream(self, messages):
        self.prompts.append(messages)
        for chunk in self.chunks:
            yield chunk


TEXT_CHUNKS = [
    AIMessageChunk(content="Hel", usage_metadata=usage(10, 0)),
    AIMessageChunk(content="lo"),
    AIMessageChunk(content="", usage_metadata=usage(0, 3), response_metadata={"stop_reason": "end_turn"}),
]


class TestChunkAssembler:

    def test_text_stream(self):
        assembler = ChunkAssembler()
        events = []
        for chunk in TEXT_CHUNKS:
            events.extend(assembler.feed(chunk))
        events.extend(assembler.finish())

        assert [e["type"] for e in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        assert events[0]["message"]["usage"]["input_tokens"] == 10
        assert events[1]["content_block"] == {"type": "text", "text": ""}
        assert events[2]["delta"] == {"type": "text_delta", "text": "Hel"}
        assert events[5]["delta"]["stop_reason"] == "end_turn"
        assert events[5]["usage"] == {"output_tokens": 3}
        assert assembler.segments() == [{"type": "text", "text": "Hello"}]
        assert assembler.usage() == {"input_tokens": 10, "output_tokens": 3}

    def test_thinking_then_text_blocks(self):
        assembler = ChunkAssembler()
        events = []
        for content in (
            [{"type": "thinking", "thinking": "hmm", "index": 0}],
            [{"type": "thinking", "signature": "sig", "index": 0}],
            [{"type": "text", "text": "ok", "index": 1}],
        ):
            events.extend(assembler.feed(AIMessageChunk(content=content)))
        events.extend(assembler.finish())

        kinds = [(e["type"], e.get("index")) for e in events]
        assert kinds.index(("content_block_stop", 0)) < kinds.index(("content_block_start", 1))
        assert {"type": "signature_delta", "signature": "sig"} in [e.get("delta") for e in events]
        assert assembler.segments() == [
            {"type": "thinking", "thinking": "hmm", "signature": "sig"},
            {"type": "text", "text": "ok"},
        ]

    def test_unknown_parts_skipped(self):
        assembler = ChunkAssembler()
        events = assembler.feed(AIMessageChunk(content=[{"type": "citation", "index": 0}]))
        assert [e["type"] for e in events] == ["message_start"]
        assert assembler.segments() == []

    def test_finish_without_chunks(self):
        events = ChunkAssembler().finish()
        assert [e["type"] for e in events] == ["message_start", "message_delta", "message_stop"]


class TestChatModelEngine:

    async def test_partial_events_then_message_and_result(self, monkeypatch):
        llm = FakeChatModel(TEXT_CHUNKS)
        monkeypatch.setattr(chat_model, "_get_llm", lambda options: llm)
        message = {"message": {"role": "user", "content": [{"type": "text", "text": "hi"}]}}

        events = [e async for e in ChatModelEngine().run(
            message, make_options(include_partial_messages=True, system_prompt="Be terse."), asyncio.Event(),
        )]

        assert all(isinstance(e, StreamEvent) for e in events[:-2])
        assert isinstance(events[-2], AssistantMessage)
        assert events[-2].content == [{"type": "text", "text": "Hello"}]
        assert isinstance(events[-1], ResultMessage)
        assert events[-1].subtype == "success"
        assert events[-1].usage == {"input_tokens": 10, "output_tokens": 3}
        assert events[-1].result == "Hello"

        system, human = llm.prompts[0]
        assert system.content == "Be terse."
        assert human.content == [{"type": "text", "text": "hi"}]

    async def test_no_partial_events_when_not_streaming(self, monkeypatch):
        monkeypatch.setattr(chat_model, "_get_llm", lambda options: FakeChatModel(TEXT_CHUNKS))
        message = {"message": {"role": "user", "content": "hi"}}

        events = [e async for e in ChatModelEngine().run(message, make_options(), asyncio.Event())]

        assert [type(e) for e in events] == [AssistantMessage, ResultMessage]

    async def test_cancel_stops_run(self, monkeypatch):
        monkeypatch.setattr(chat_model, "_get_llm", lambda options: FakeChatModel(TEXT_CHUNKS))
        cancel = asyncio.Event()
        cancel.set()

        events = [e async for e in ChatModelEngine().run(
            {"message": {"role": "user", "content": "hi"}}, make_options(), cancel,
        )]

        assert events == []


class TestGetLlm:

    def test_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
            _get_llm(make_options())

    def test_thinking_raises_token_ceiling(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        llm = _get_llm(make_options(
            env={"ANTHROPIC_AUTH_TOKEN": "tok"},
            max_thinking_tokens=8000,
            max_tokens=4096,
        ))

        assert llm.model == "claude-x"
        assert llm.thinking == {"type": "enabled", "budget_tokens": 8000}
        assert llm.max_tokens == 8000 + chat_model.THINKING_HEADROOM

    def test_sampling_params_without_thinking(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
        llm = _get_llm(make_options(temperature=0.3, top_k=5))

        assert llm.temperature == 0.3
        assert llm.top_k == 5
        assert llm.max_tokens == 4096
