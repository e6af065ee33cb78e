"""
Tests for gateway.engine.agent_sdk — Claude Agent SDK adapter.
"""

import asyncio

import pytest
from claude_agent_sdk import (
    AssistantMessage as SDKAssistantMessage,
    ResultMessage as SDKResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
)
from claude_agent_sdk.types import StreamEvent as SDKStreamEvent

from gateway.engine import agent_sdk, build_engine
from gateway.engine.agent_sdk import AgentSDKEngine, build_sdk_options, to_engine_event
from gateway.engine.base import AssistantMessage, EngineOptions, ResultMessage, StreamEvent


def make_options(**overrides):
    values = dict(
        model="claude-x",
        cwd="/work",
        permission_mode="acceptEdits",
        max_turns=5,
        allowed_tools=["Read", "Grep"],
        disallowed_tools=["Bash"],
    )
    values.update(overrides)
    return EngineOptions(**values)


def sdk_result(**overrides):
    values = dict(
        subtype="success",
        duration_ms=120,
        duration_api_ms=100,
        is_error=False,
        num_turns=2,
        session_id="s-1",
        total_cost_usd=0.01,
        usage={"input_tokens": 11, "output_tokens": 4},
        result="done",
    )
    values.update(overrides)
    return SDKResultMessage(**values)


class TestBuildSdkOptions:

    def test_maps_bundle(self):
        sdk_options = build_sdk_options(make_options(
            system_prompt="Be terse.",
            max_thinking_tokens=2048,
            env={"ANTHROPIC_BASE_URL": "https://x"},
            include_partial_messages=True,
            setting_sources=["local"],
        ))

        assert sdk_options.cwd == "/work"
        assert sdk_options.model == "claude-x"
        assert sdk_options.permission_mode == "acceptEdits"
        assert sdk_options.max_turns == 5
        assert sdk_options.allowed_tools == ["Read", "Grep"]
        assert sdk_options.disallowed_tools == ["Bash"]
        assert sdk_options.system_prompt == "Be terse."
        assert sdk_options.max_thinking_tokens == 2048
        assert sdk_options.env == {"ANTHROPIC_BASE_URL": "https://x"}
        assert sdk_options.include_partial_messages is True
        assert sdk_options.setting_sources == ["local"]

    def test_stderr_hook_only_in_debug(self):
        assert build_sdk_options(make_options()).stderr is None
        assert build_sdk_options(make_options(debug=True)).stderr is not None


class TestToEngineEvent:

    def test_stream_event(self):
        event = to_engine_event(SDKStreamEvent(uuid="u-1", session_id="s-1", event={"type": "message_stop"}))
        assert event == StreamEvent(event={"type": "message_stop"})

    def test_assistant_message_blocks(self):
        event = to_engine_event(SDKAssistantMessage(
            content=[
                ThinkingBlock(thinking="plan", signature="sig"),
                ToolUseBlock(id="tu_1", name="Read", input={"path": "a"}),
                TextBlock(text="Done."),
            ],
            model="claude-x",
        ))

        assert isinstance(event, AssistantMessage)
        assert event.content == [
            {"type": "thinking", "thinking": "plan", "signature": "sig"},
            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"path": "a"}},
            {"type": "text", "text": "Done."},
        ]

    def test_result_message(self):
        event = to_engine_event(sdk_result(subtype="error_max_turns", is_error=True))

        assert isinstance(event, ResultMessage)
        assert event.subtype == "error_max_turns"
        assert event.is_error is True
        assert event.usage == {"input_tokens": 11, "output_tokens": 4}
        assert event.num_turns == 2

    def test_other_messages_ignored(self):
        assert to_engine_event(object()) is None


class TestAgentSDKEngine:

    async def test_feeds_single_message_and_maps_output(self, monkeypatch):
        seen = {}

        async def fake_query(prompt, options):
            seen["prompt"] = [item async for item in prompt]
            seen["options"] = options
            yield SDKAssistantMessage(content=[TextBlock(text="4")], model="claude-x")
            yield sdk_result()

        monkeypatch.setattr(agent_sdk, "query", fake_query)
        message = {"type": "user", "message": {"role": "user", "content": []}, "session_id": "msg_1"}

        events = [e async for e in AgentSDKEngine().run(message, make_options(), asyncio.Event())]

        assert seen["prompt"] == [message]
        assert seen["options"].cwd == "/work"
        assert [type(e) for e in events] == [AssistantMessage, ResultMessage]

    async def test_cancel_stops_iteration(self, monkeypatch):
        async def fake_query(prompt, options):
            yield sdk_result()

        monkeypatch.setattr(agent_sdk, "query", fake_query)
        cancel = asyncio.Event()
        cancel.set()

        events = [e async for e in AgentSDKEngine().run({}, make_options(), cancel)]

        assert events == []


class TestBuildEngine:

    def test_known_engines(self):
        assert build_engine("agent_sdk").name == "agent_sdk"
        assert build_engine("chat_model").name == "chat_model"

    def test_unknown_engine(self):
        with pytest.raises(ValueError, match="Unknown engine"):
            build_engine("mystery")
