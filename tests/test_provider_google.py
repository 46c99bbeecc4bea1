import types

import pytest

from magma_agent.config import ProviderConfig
from magma_agent.messages import Message, ToolCall, ToolCallBlock, ToolResult, ToolResultBlock, system_message, user_message
from magma_agent.providers import CompletionConfig, GoogleProvider
from magma_agent.tools import Tool


def _tools():
    return [
        Tool(name="ping", description="Ping", target=lambda call, agent: "pong"),
        Tool(
            name="echo",
            description="Echo",
            target=lambda call, agent: call.fn_args["text"],
            params=[{"type": "string", "key": "text", "required": True}],
        ),
    ]


def test_convert_messages_uses_model_role_and_function_parts():
    messages = [
        system_message("sys"),
        user_message("hi"),
        Message("assistant", [ToolCallBlock(tool_call=ToolCall(id="1", fn_name="echo", fn_args={"text": "a"}))]),
        Message("user", [ToolResultBlock(tool_result=ToolResult(id="1", fn_name="echo", result="a"))]),
    ]
    contents = GoogleProvider().convert_messages(messages)
    assert contents == [
        {"role": "user", "parts": [{"text": "hi"}]},
        {"role": "model", "parts": [{"function_call": {"name": "echo", "args": {"text": "a"}}}]},
        {"role": "user", "parts": [{"function_response": {"name": "echo", "response": {"result": "a"}}}]},
    ]


def test_convert_tools_omits_empty_parameters():
    declarations = GoogleProvider().convert_tools(_tools())[0]["function_declarations"]
    assert declarations[0] == {"name": "ping", "description": "Ping"}
    assert declarations[1]["parameters"]["required"] == ["text"]


def test_convert_config_pins_tool_choice():
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="google", model="gemini-1.5-pro"),
        messages=[system_message("rules"), user_message("hi")],
        tools=_tools(),
        tool_choice="echo",
        max_tokens=50,
    )
    request = GoogleProvider().convert_config(config)

    assert request["model_name"] == "gemini-1.5-pro"
    assert request["system_instruction"] == "rules"
    assert request["generation_config"] == {"temperature": 0, "max_output_tokens": 50}
    assert request["tool_config"] == {
        "function_calling_config": {"mode": "ANY", "allowed_function_names": ["echo"]}
    }


class FakeModel:
    def __init__(self, response, **kwargs):
        self.kwargs = kwargs
        self.response = response
        self.calls = []

    async def generate_content_async(self, contents, stream=False):
        self.calls.append((contents, stream))
        return self.response


@pytest.mark.asyncio
async def test_completion_with_function_call():
    response = types.SimpleNamespace(
        candidates=[
            types.SimpleNamespace(
                content=types.SimpleNamespace(
                    parts=[
                        types.SimpleNamespace(text="Calling", function_call=None),
                        types.SimpleNamespace(
                            text=None,
                            function_call=types.SimpleNamespace(name="echo", args={"text": "hi"}),
                        ),
                    ]
                ),
                finish_reason="STOP",
            )
        ],
        usage_metadata=types.SimpleNamespace(prompt_token_count=5, candidates_token_count=2, cached_content_token_count=0),
    )
    models = []

    def generative_model(**kwargs):
        model = FakeModel(response, **kwargs)
        models.append(model)
        return model

    client = types.SimpleNamespace(GenerativeModel=generative_model)
    config = CompletionConfig(
        provider_config=ProviderConfig(provider="google", model="gemini-1.5-pro", client=client),
        messages=[user_message("hi")],
        tools=_tools(),
    )

    completion = await GoogleProvider().make_completion_request(config)

    assert models[0].kwargs["model_name"] == "gemini-1.5-pro"
    assert "contents" not in models[0].kwargs
    assert models[0].calls[0][0] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert completion.stop_reason == "tool_call"
    assert completion.message.get_text() == "Calling"
    call = completion.message.get_tool_calls()[0]
    assert call.fn_name == "echo" and call.fn_args == {"text": "hi"}
    assert call.id
    assert completion.usage.input_tokens == 5
