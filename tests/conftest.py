import json
import os
import sys
import types

import pytest

# Ensure project root is on sys.path so tests run without an editable install
ROOT = os.path.dirname(os.path.abspath(__file__))
PROJ = os.path.abspath(os.path.join(ROOT, os.pardir))
if PROJ not in sys.path:
    sys.path.insert(0, PROJ)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("MAGMA_PROVIDER", "MAGMA_MODEL", "MAGMA_MESSAGE_CONTEXT", "MAGMA_LOG_LEVEL", "MAGMA_TRACE_PATH"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace provider backoff sleeps; returns the list of requested delays."""
    from magma_agent.providers import base

    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(base, "sleep", fake_sleep)
    return delays


# ---------------------------------------------------------------------------
# OpenAI-shaped fake client
# ---------------------------------------------------------------------------


def openai_tool_call(call_id, name, arguments):
    return types.SimpleNamespace(
        id=call_id,
        type="function",
        function=types.SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


def openai_completion(content=None, tool_calls=None, finish_reason="stop", prompt_tokens=10, completion_tokens=5):
    message = types.SimpleNamespace(content=content, tool_calls=tool_calls, reasoning=None)
    return types.SimpleNamespace(
        id="chatcmpl-1",
        model="gpt-4o",
        choices=[types.SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=types.SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            prompt_tokens_details=None,
        ),
    )


class FakeCompletions:
    """Replays scripted responses; callables are awaited with the request kwargs."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if not self.responses:
            raise AssertionError("unexpected completion request")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response(kwargs)
        return response


class FakeOpenAIClient:
    def __init__(self, responses):
        self.chat = types.SimpleNamespace(completions=FakeCompletions(responses))

    @property
    def requests(self):
        return self.chat.completions.requests


class FakeStream:
    """Async iterator over scripted streaming chunks."""

    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


def openai_stream_chunk(content=None, finish_reason=None, usage=None):
    delta = types.SimpleNamespace(content=content, tool_calls=None, reasoning=None)
    choices = [types.SimpleNamespace(delta=delta, finish_reason=finish_reason)] if usage is None else []
    return types.SimpleNamespace(id="s1", choices=choices, usage=usage)


class RateLimitError(Exception):
    def __init__(self, message="rate limited"):
        super().__init__(message)
        self.status_code = 429


@pytest.fixture
def openai_factory():
    return types.SimpleNamespace(
        client=FakeOpenAIClient,
        completion=openai_completion,
        tool_call=openai_tool_call,
        rate_limit=RateLimitError,
        stream=FakeStream,
        stream_chunk=openai_stream_chunk,
    )
