import types

import pytest

from magma_agent.config import ProviderConfig
from magma_agent.messages import (
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolResult,
    ToolResultBlock,
    system_message,
    user_message,
)
from magma_agent.providers import AnthropicProvider, CompletionConfig
from magma_agent.providers.anthropic import default_max_tokens
from magma_agent.tools import Tool


def test_system_messages_hoisted_and_joined():
    provider = AnthropicProvider()
    messages = [system_message("one"), system_message("two"), user_message("hi")]
    assert provider.convert_system(messages) == "one\ntwo"
    assert provider.convert_messages(messages) == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]


def test_cached_system_prompt_uses_blocks():
    parts = AnthropicProvider().convert_system([system_message("rules", cache=True)])
    assert parts == [{"type": "text", "text": "rules", "cache_control": {"type": "ephemeral"}}]


def test_alternation_is_repaired():
    messages = [Message("assistant", content="a"), Message("assistant", content="b")]
    converted = AnthropicProvider().convert_messages(messages)
    assert [m["role"] for m in converted] == ["user", "assistant", "user", "assistant"]
    assert converted[0]["content"] == "begin"
    assert converted[2]["content"] == "Continue."


def test_tool_blocks_converted():
    messages = [
        user_message("go"),
        Message(
            "assistant",
            [
                ReasoningBlock(reasoning="plan", signature="sig"),
                ToolCallBlock(tool_call=ToolCall(id="t1", fn_name="echo", fn_args={"text": "x"})),
            ],
        ),
        Message("user", [ToolResultBlock(tool_result=ToolResult(id="t1", fn_name="echo", result={"ok": True}))]),
    ]
    converted = AnthropicProvider().convert_messages(messages)

    assert converted[1]["content"] == [
        {"type": "thinking", "thinking": "plan", "signature": "sig"},
        {"type": "tool_use", "id": "t1", "name": "echo", "input": {"text": "x"}},
    ]
    assert converted[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "t1", "content": '{"ok": true}', "is_error": False}
    ]


def test_convert_config_defaults():
    tool = Tool(name="noop", description="Nothing", target=lambda call, agent: "ok")
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="anthropic", model="claude-3-5-sonnet-latest"),
        messages=[user_message("hi")],
        tools=[tool],
        tool_choice="required",
    )
    request = AnthropicProvider().convert_config(config)

    assert request["max_tokens"] == 8192
    assert request["tools"] == [{"name": "noop", "description": "Nothing", "input_schema": {"type": "object"}}]
    assert request["tool_choice"] == {"type": "any"}
    assert "system" not in request
    assert default_max_tokens("claude-3-opus") == 4096


class FakeMessages:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


@pytest.mark.asyncio
async def test_non_streaming_completion():
    response = types.SimpleNamespace(
        model="claude-3-5-sonnet-latest",
        content=[
            {"type": "thinking", "thinking": "consider", "signature": "s"},
            {"type": "text", "text": "Hello"},
            {"type": "tool_use", "id": "call-1", "name": "fetch", "input": {"foo": "bar"}},
        ],
        stop_reason="tool_use",
        usage={"input_tokens": 12, "output_tokens": 34, "cache_read_input_tokens": 2},
    )
    client = types.SimpleNamespace(messages=FakeMessages(response))
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="anthropic", model="claude-3-5-sonnet-latest", client=client),
        messages=[user_message("hi")],
    )

    completion = await AnthropicProvider().make_completion_request(config)

    assert completion.stop_reason == "tool_call"
    assert completion.message.get_text() == "Hello"
    assert completion.message.get_reasoning() == "consider"
    assert completion.message.get_tool_calls()[0].fn_args == {"foo": "bar"}
    assert completion.usage.input_tokens == 12
    assert completion.usage.output_tokens == 34
    assert completion.usage.cache_read_tokens == 2


class _AsyncStream:
    def __init__(self, events):
        self._events = list(events)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)


@pytest.mark.asyncio
async def test_streaming_events_fold_into_message():
    events = [
        {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 9, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi "}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "there"}},
        {"type": "content_block_stop", "index": 0},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "tu_1", "name": "echo", "input": {}},
        },
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"text"'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ': "x"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 15}},
        {"type": "message_stop"},
    ]
    messages = FakeMessages(_AsyncStream(events))
    client = types.SimpleNamespace(messages=messages)
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="anthropic", model="claude-3-opus", client=client),
        messages=[user_message("hi")],
        stream=True,
    )
    received = []

    completion = await AnthropicProvider().make_completion_request(config, received.append)

    assert messages.calls[0]["stream"] is True
    assert received[3].buffer.get_text() == "Hi there"
    assert received[3].delta.get_text() == "there"
    assert completion.message.get_text() == "Hi there"
    assert completion.message.get_tool_calls()[0].fn_args == {"text": "x"}
    assert completion.stop_reason == "tool_call"
    assert completion.usage.input_tokens == 9
    assert completion.usage.output_tokens == 15
