import types

import pytest

from magma_agent.cancellation import AbortSignal
from magma_agent.config import ProviderConfig
from magma_agent.errors import ProviderError, RateLimitExhausted, RequestAborted
from magma_agent.messages import user_message
from magma_agent.providers import CompletionConfig, backoff_delay, provider_registry
from magma_agent.providers.anthropic import AnthropicProvider


def _config(client):
    return CompletionConfig(
        provider_config=ProviderConfig(provider="openai", model="gpt-4o", client=client),
        messages=[user_message("hi")],
    )


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(a) for a in range(8)] == [1, 2, 4, 8, 16, 32, 60, 60]


def test_unknown_provider_rejected():
    with pytest.raises(ProviderError, match="Can not create provider with type nope"):
        provider_registry.create_provider("nope")


def test_all_providers_registered():
    assert {"openai", "anthropic", "groq", "google"} <= set(provider_registry.names())


@pytest.mark.asyncio
async def test_rate_limit_retries_then_succeeds(openai_factory, no_sleep):
    client = openai_factory.client(
        [
            openai_factory.rate_limit(),
            openai_factory.rate_limit(),
            openai_factory.completion("hello"),
        ]
    )
    provider = provider_registry.create_provider("openai")

    completion = await provider.make_completion_request(_config(client))

    assert completion.message.get_text() == "hello"
    assert no_sleep == [1, 2]
    assert len(client.requests) == 3


@pytest.mark.asyncio
async def test_rate_limit_exhausted_after_max_retries(openai_factory, no_sleep):
    client = openai_factory.client([openai_factory.rate_limit() for _ in range(6)])
    provider = provider_registry.create_provider("openai")

    with pytest.raises(RateLimitExhausted, match="Rate limited after 5 attempts"):
        await provider.make_completion_request(_config(client))

    assert no_sleep == [1, 2, 4, 8, 16]


@pytest.mark.asyncio
async def test_response_status_code_counts_as_rate_limit(openai_factory, no_sleep):
    error = RuntimeError("slow down")
    error.response = types.SimpleNamespace(status_code=429)
    client = openai_factory.client([error, openai_factory.completion("ok")])

    completion = await provider_registry.create_provider("openai").make_completion_request(_config(client))

    assert completion.message.get_text() == "ok"


@pytest.mark.asyncio
async def test_other_errors_propagate_unchanged(openai_factory, no_sleep):
    error = ValueError("bad request")
    client = openai_factory.client([error])

    with pytest.raises(ValueError) as excinfo:
        await provider_registry.create_provider("openai").make_completion_request(_config(client))

    assert excinfo.value is error
    assert no_sleep == []


@pytest.mark.asyncio
async def test_aborted_signal_raises_request_aborted(openai_factory):
    signal = AbortSignal()
    signal.abort()
    client = openai_factory.client([openai_factory.completion("never")])

    with pytest.raises(RequestAborted):
        await provider_registry.create_provider("openai").make_completion_request(_config(client), signal=signal)

    assert client.requests == []


def test_anthropic_rate_limit_error_body():
    error = RuntimeError("overloaded")
    error.body = {"error": {"type": "rate_limit_error"}}
    assert AnthropicProvider().is_rate_limit_error(error)
    assert not AnthropicProvider().is_rate_limit_error(RuntimeError("other"))
