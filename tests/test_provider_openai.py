import types

import pytest

from magma_agent.config import ProviderConfig
from magma_agent.errors import ProviderError
from magma_agent.messages import (
    Image,
    ImageBlock,
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
from magma_agent.providers import CompletionConfig, GroqProvider, OpenAIProvider
from magma_agent.providers.openai import TOOL_ERROR_PREFIX
from magma_agent.tools import Tool


def _echo_tool():
    return Tool(
        name="echo",
        description="Echo text",
        target=lambda call, agent: call.fn_args["text"],
        params=[{"type": "string", "key": "text", "required": True}],
    )


def test_convert_messages_maps_tool_traffic():
    messages = [
        system_message("be nice"),
        user_message("hi"),
        Message(
            "assistant",
            [
                ReasoningBlock(reasoning="hmm"),
                TextBlock(text="calling"),
                ToolCallBlock(tool_call=ToolCall(id="c1", fn_name="echo", fn_args={"text": "x"})),
            ],
        ),
        Message(
            "user",
            [
                ToolResultBlock(tool_result=ToolResult(id="c1", fn_name="echo", result="x")),
            ],
        ),
        Message("user", [ToolResultBlock(tool_result=ToolResult(id="c2", fn_name="echo", result="bad", error=True))]),
    ]

    converted = OpenAIProvider().convert_messages(messages)

    assert converted[0] == {"role": "system", "content": "be nice"}
    assert converted[1] == {"role": "user", "content": "hi"}
    assert converted[2]["content"] == "<thinking>hmm</thinking>\ncalling"
    assert converted[2]["tool_calls"] == [
        {"type": "function", "id": "c1", "function": {"name": "echo", "arguments": '{"text": "x"}'}}
    ]
    assert converted[3] == {"role": "tool", "tool_call_id": "c1", "content": "x"}
    assert converted[4]["content"] == f"{TOOL_ERROR_PREFIX}bad"


def test_convert_user_images_become_parts():
    message = Message("user", [TextBlock(text="see"), ImageBlock(image=Image(data="QUJD", type="image/png"))])
    converted = OpenAIProvider().convert_messages([message])
    assert converted == [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "see"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
            ],
        }
    ]


def test_convert_config_scales_temperature_and_pins_tool():
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="openai", model="gpt-4o", settings={"top_p": 0.5}),
        messages=[user_message("hi")],
        tools=[_echo_tool()],
        tool_choice="echo",
        temperature=0.4,
        max_tokens=100,
    )
    request = OpenAIProvider().convert_config(config)

    assert request["model"] == "gpt-4o"
    assert request["temperature"] == 0.8
    assert request["top_p"] == 0.5
    assert request["max_tokens"] == 100
    assert request["tool_choice"] == {"type": "function", "function": {"name": "echo"}}
    assert request["tools"][0]["function"]["parameters"]["required"] == ["text"]


@pytest.mark.asyncio
async def test_non_streaming_completion(openai_factory):
    client = openai_factory.client(
        [
            openai_factory.completion(
                content=None,
                tool_calls=[openai_factory.tool_call("c1", "echo", {"text": "hi"})],
                finish_reason="tool_calls",
                prompt_tokens=12,
                completion_tokens=3,
            )
        ]
    )
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="openai", model="gpt-4o", client=client),
        messages=[user_message("hi")],
        tools=[_echo_tool()],
    )

    completion = await OpenAIProvider().make_completion_request(config)

    assert completion.stop_reason == "tool_call"
    assert completion.usage.input_tokens == 12
    assert completion.usage.output_tokens == 3
    call = completion.message.get_tool_calls()[0]
    assert (call.id, call.fn_name, call.fn_args) == ("c1", "echo", {"text": "hi"})


@pytest.mark.asyncio
async def test_null_completion_raises(openai_factory):
    client = openai_factory.client([openai_factory.completion(content="")])
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="openai", client=client), messages=[user_message("hi")]
    )
    with pytest.raises(ProviderError, match="openai completion was null"):
        await OpenAIProvider().make_completion_request(config)


class _AsyncStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = types.SimpleNamespace(content=content, tool_calls=tool_calls, reasoning=None)
    choices = [types.SimpleNamespace(delta=delta, finish_reason=finish_reason)] if usage is None else []
    return types.SimpleNamespace(id="s1", choices=choices, usage=usage)


def _fragment(index, call_id=None, name=None, arguments=""):
    return types.SimpleNamespace(
        index=index,
        id=call_id,
        function=types.SimpleNamespace(name=name, arguments=arguments),
    )


@pytest.mark.asyncio
async def test_streaming_reassembles_text_and_tool_calls():
    chunks = [
        _chunk(content="Hel"),
        _chunk(content="lo"),
        _chunk(tool_calls=[_fragment(0, "c1", "echo", '{"te')]),
        _chunk(tool_calls=[_fragment(0, arguments='xt": "hi"}')]),
        _chunk(finish_reason="tool_calls"),
        _chunk(usage=types.SimpleNamespace(prompt_tokens=7, completion_tokens=2, prompt_tokens_details=None)),
    ]
    seen_kwargs = {}

    async def create(**kwargs):
        seen_kwargs.update(kwargs)
        return _AsyncStream(chunks)

    client = types.SimpleNamespace(chat=types.SimpleNamespace(completions=types.SimpleNamespace(create=create)))
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="openai", model="gpt-4o", client=client),
        messages=[user_message("hi")],
        stream=True,
    )
    received = []

    completion = await OpenAIProvider().make_completion_request(config, received.append)

    assert seen_kwargs["stream"] is True
    assert seen_kwargs["stream_options"] == {"include_usage": True}
    assert [c.buffer.get_text() for c in received[:2]] == ["Hel", "Hello"]
    assert received[1].delta.get_text() == "lo"
    assert completion.message.get_text() == "Hello"
    assert completion.message.get_tool_calls()[0].fn_args == {"text": "hi"}
    assert completion.stop_reason == "tool_call"
    assert completion.usage.input_tokens == 7


@pytest.mark.asyncio
async def test_groq_streams_without_stream_options():
    seen_kwargs = {}
    usage = types.SimpleNamespace(prompt_tokens=4, completion_tokens=1, prompt_tokens_details=None)
    final = types.SimpleNamespace(
        id="g1",
        choices=[
            types.SimpleNamespace(
                delta=types.SimpleNamespace(content="ok", tool_calls=None, reasoning=None),
                finish_reason="stop",
            )
        ],
        usage=None,
        x_groq=types.SimpleNamespace(usage=usage),
    )

    async def create(**kwargs):
        seen_kwargs.update(kwargs)
        return _AsyncStream([final])

    client = types.SimpleNamespace(chat=types.SimpleNamespace(completions=types.SimpleNamespace(create=create)))
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="groq", model="llama-3.1-70b", client=client),
        messages=[user_message("hi")],
        stream=True,
    )

    completion = await GroqProvider().make_completion_request(config)

    assert "stream_options" not in seen_kwargs
    assert completion.message.get_text() == "ok"
    assert completion.provider == "groq"
    assert completion.usage.input_tokens == 4
    assert completion.stop_reason == "natural"
