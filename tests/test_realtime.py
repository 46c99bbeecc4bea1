import base64
import json

import pytest

from magma_agent.agent import MagmaAgent
from magma_agent.messages import Message, ToolCall, ToolCallBlock, Usage, user_message
from magma_agent.realtime import Envelope, EnvelopeType, dispatch_envelope
from magma_agent.tools import Tool


class RecordingAgent(MagmaAgent):
    def __init__(self, *args, **kwargs):
        self.events = []
        super().__init__(*args, **kwargs)

    def get_tools(self):
        return [Tool(name="echo", description="", target=lambda call, agent: call.fn_args["text"])]

    def on_audio_chunk(self, chunk):
        self.events.append(("audio", chunk))

    async def on_audio_commit(self):
        self.events.append(("commit",))

    def on_abort(self):
        self.events.append(("abort",))

    def on_usage_update(self, usage):
        self.events.append(("usage", usage))

    def on_stream_chunk(self, chunk):
        self.events.append(("chunk", chunk))

    def on_error(self, error):
        self.events.append(("error", str(error)))


def test_from_json_rejects_malformed_input():
    with pytest.raises(ValueError, match="Malformed envelope"):
        Envelope.from_json("{not json")
    with pytest.raises(ValueError, match="Unknown envelope type"):
        Envelope.from_json(json.dumps({"type": "video.frame"}))
    with pytest.raises(ValueError):
        Envelope.from_json(json.dumps([1, 2]))


def test_audio_chunk_is_base64_encoded():
    envelope = Envelope.audio_chunk(b"\x00\x01")
    decoded = json.loads(envelope.to_json())
    assert decoded == {"type": "audio.chunk", "data": {"audio": base64.b64encode(b"\x00\x01").decode()}}
    assert Envelope.from_json(envelope.to_json()) == envelope


@pytest.mark.asyncio
async def test_audio_and_commit_routed_to_hooks():
    agent = RecordingAgent("rt")
    await dispatch_envelope(agent, Envelope.audio_chunk(b"pcm"))
    await dispatch_envelope(agent, Envelope.commit())
    assert agent.events == [("audio", b"pcm"), ("commit",)]


@pytest.mark.asyncio
async def test_abort_kills_requests():
    agent = RecordingAgent("rt")
    ctx = agent.cancellation.begin()

    await dispatch_envelope(agent, Envelope.abort())

    assert ctx.signal.aborted
    assert agent.events == [("abort",)]


@pytest.mark.asyncio
async def test_plain_message_is_appended():
    agent = RecordingAgent("rt")
    result = await dispatch_envelope(agent, Envelope.message(user_message("hello")))
    assert result is None
    assert agent.messages[-1].get_text() == "hello"


@pytest.mark.asyncio
async def test_tool_call_message_is_executed():
    agent = RecordingAgent("rt")
    call = Message("assistant", [ToolCallBlock(tool_call=ToolCall(id="c1", fn_name="echo", fn_args={"text": "hey"}))])

    result = await dispatch_envelope(agent, Envelope.from_json(Envelope.message(call).to_json()))

    assert result.role == "user"
    assert result.get_tool_results()[0].result == "hey"
    assert agent.messages == []


@pytest.mark.asyncio
async def test_usage_error_and_config_envelopes():
    agent = RecordingAgent("rt")

    await dispatch_envelope(agent, Envelope.usage(Usage(input_tokens=3)))
    await dispatch_envelope(agent, Envelope.error("socket closed"))
    await dispatch_envelope(agent, Envelope.config(voice="alloy"))

    assert agent.events[0] == ("usage", Usage(input_tokens=3))
    assert agent.events[1] == ("error", "socket closed")
    assert agent.state["realtime_config"] == {"voice": "alloy"}


@pytest.mark.asyncio
async def test_stream_chunk_envelope_builds_chunk():
    agent = RecordingAgent("rt")
    envelope = Envelope(
        EnvelopeType.STREAM_CHUNK,
        {
            "id": "s1",
            "provider": "openai",
            "model": "gpt-4o",
            "delta": {"role": "assistant", "content": "Hi"},
            "buffer": {"role": "assistant", "content": "Hi"},
        },
    )

    await dispatch_envelope(agent, envelope)

    kind, chunk = agent.events[0]
    assert kind == "chunk"
    assert chunk.buffer.get_text() == "Hi"
    assert chunk.usage == Usage()
