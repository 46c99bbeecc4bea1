"""OpenAI Chat Completions adapter."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - import guard exercised in runtime
    from openai import AsyncOpenAI
except ImportError:  # pragma: no cover - covered via error path tests
    AsyncOpenAI = None  # type: ignore[assignment]

from ..errors import ProviderError
from ..messages import (
    Completion,
    ImageBlock,
    Message,
    ReasoningBlock,
    StreamChunk,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolResultBlock,
    Usage,
)
from ..tools import Tool
from .base import CompletionConfig, Provider, StreamCallback, emit_chunk, get_attr, provider_registry

TOOL_ERROR_PREFIX = "Something went wrong calling your last tool - \n"

_STOP_REASONS = {
    "stop": "natural",
    "tool_calls": "tool_call",
    "function_call": "tool_call",
    "content_filter": "content_filter",
    "length": "max_tokens",
}


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"Tool call arguments were not valid JSON: {raw!r}") from exc
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _result_text(result: Any) -> str:
    return result if isinstance(result, str) else json.dumps(result)


def _image_url(block: ImageBlock) -> str:
    if block.image.type == "image/url":
        return block.image.data
    return f"data:{block.image.type};base64,{block.image.data}"


class OpenAIProvider(Provider):
    """Adapter for the OpenAI Chat Completions API.

    Also serves OpenAI-compatible vendors through subclasses that only swap
    the client.
    """

    name = "openai"
    package = "openai"

    def create_client(self) -> Any:
        if AsyncOpenAI is None:
            raise self._missing_package()
        return AsyncOpenAI()

    # --- conversion -------------------------------------------------------
    def convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                converted.append({"role": "system", "content": message.get_text()})
            elif message.role == "assistant":
                converted.append(self._convert_assistant(message))
            else:
                converted.extend(self._convert_user(message))
        return converted

    def _convert_assistant(self, message: Message) -> Dict[str, Any]:
        parts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in message.blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ReasoningBlock):
                if not block.redacted:
                    parts.append(f"<thinking>{block.reasoning}</thinking>")
            elif isinstance(block, ToolCallBlock):
                call = block.tool_call
                tool_calls.append(
                    {
                        "type": "function",
                        "id": call.id,
                        "function": {"name": call.fn_name, "arguments": json.dumps(call.fn_args)},
                    }
                )
        out: Dict[str, Any] = {"role": "assistant", "content": "\n".join(parts) if parts else None}
        if tool_calls:
            out["tool_calls"] = tool_calls
        return out

    def _convert_user(self, message: Message) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        content_parts: List[Dict[str, Any]] = []
        has_image = False
        for block in message.blocks:
            if isinstance(block, ToolResultBlock):
                result = block.tool_result
                text = _result_text(result.result)
                out.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.id,
                        "content": f"{TOOL_ERROR_PREFIX}{text}" if result.error else text,
                    }
                )
            elif isinstance(block, TextBlock):
                content_parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                has_image = True
                content_parts.append({"type": "image_url", "image_url": {"url": _image_url(block)}})
        if content_parts:
            if has_image:
                out.append({"role": "user", "content": content_parts})
            else:
                out.append({"role": "user", "content": "\n".join(p["text"] for p in content_parts)})
        return out

    def convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema(),
                },
            }
            for tool in tools
        ]

    def convert_tool_choice(self, tool_choice: Optional[str]) -> Any:
        if tool_choice is None:
            return None
        if tool_choice in ("auto", "required"):
            return tool_choice
        return {"type": "function", "function": {"name": tool_choice}}

    def convert_config(self, config: CompletionConfig) -> Dict[str, Any]:
        request: Dict[str, Any] = dict(config.provider_config.settings or {})
        request["model"] = config.model
        request["messages"] = self.convert_messages(config.messages)
        if config.tools:
            request["tools"] = self.convert_tools(config.tools)
            tool_choice = self.convert_tool_choice(config.tool_choice)
            if tool_choice is not None:
                request["tool_choice"] = tool_choice
        if config.max_tokens is not None:
            request["max_tokens"] = config.max_tokens
        if config.temperature is not None:
            # canonical temperature is 0..1, chat completions accepts 0..2
            request["temperature"] = config.temperature * 2
        return request

    def convert_stop_reason(self, stop_reason: Any) -> str:
        return _STOP_REASONS.get(stop_reason, "unknown")

    def _convert_usage(self, usage: Any) -> Usage:
        if usage is None:
            return Usage()
        details = get_attr(usage, "prompt_tokens_details")
        return Usage(
            input_tokens=int(get_attr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(get_attr(usage, "completion_tokens", 0) or 0),
            cache_write_tokens=0,
            cache_read_tokens=int(get_attr(details, "cached_tokens", 0) or 0),
        )

    def _stream_options(self) -> Dict[str, Any]:
        return {"stream": True, "stream_options": {"include_usage": True}}

    def _stream_usage(self, chunk: Any) -> Any:
        return get_attr(chunk, "usage")

    # --- requests ---------------------------------------------------------
    async def _request(self, config: CompletionConfig, on_stream_chunk: Optional[StreamCallback]) -> Completion:
        client = self.get_client(config.provider_config)
        request = self.convert_config(config)
        if config.stream:
            return await self._stream(client, request, on_stream_chunk)

        response = await client.chat.completions.create(**request)
        choices = get_attr(response, "choices") or []
        if not choices:
            raise ProviderError(f"{self.name} completion returned no choices", details={"provider": self.name})
        choice = choices[0]
        raw_message = get_attr(choice, "message")

        blocks: List[Any] = []
        reasoning = get_attr(raw_message, "reasoning")
        if reasoning:
            blocks.append(ReasoningBlock(reasoning=str(reasoning)))
        content = get_attr(raw_message, "content")
        if content:
            blocks.append(TextBlock(text=content))
        for raw_call in get_attr(raw_message, "tool_calls") or []:
            fn = get_attr(raw_call, "function")
            blocks.append(
                ToolCallBlock(
                    tool_call=ToolCall(
                        id=get_attr(raw_call, "id"),
                        fn_name=get_attr(fn, "name"),
                        fn_args=_parse_arguments(get_attr(fn, "arguments")),
                    )
                )
            )
        if not any(isinstance(b, (TextBlock, ToolCallBlock)) for b in blocks):
            raise ProviderError(f"{self.name} completion was null", details={"provider": self.name})

        return Completion(
            message=Message("assistant", blocks),
            provider=self.name,
            model=get_attr(response, "model", config.model),
            usage=self._convert_usage(get_attr(response, "usage")),
            stop_reason=self.convert_stop_reason(get_attr(choice, "finish_reason")),
        )

    async def _stream(
        self,
        client: Any,
        request: Dict[str, Any],
        on_stream_chunk: Optional[StreamCallback],
    ) -> Completion:
        stream = await client.chat.completions.create(**request, **self._stream_options())

        content_buffer = ""
        reasoning_buffer = ""
        tool_buffers: Dict[int, Dict[str, Any]] = {}
        usage = Usage()
        stop_reason: Optional[str] = None
        chunk_id = ""

        async for chunk in stream:
            chunk_id = get_attr(chunk, "id", chunk_id) or chunk_id
            delta_blocks: List[Any] = []

            raw_usage = self._stream_usage(chunk)
            if raw_usage is not None:
                usage = self._convert_usage(raw_usage)

            choices = get_attr(chunk, "choices") or []
            if choices:
                choice = choices[0]
                delta = get_attr(choice, "delta")
                text = get_attr(delta, "content")
                if text:
                    content_buffer += text
                    delta_blocks.append(TextBlock(text=text))
                reasoning = get_attr(delta, "reasoning")
                if reasoning:
                    reasoning_buffer += reasoning
                    delta_blocks.append(ReasoningBlock(reasoning=reasoning))
                for fragment in get_attr(delta, "tool_calls") or []:
                    index = get_attr(fragment, "index", len(tool_buffers))
                    entry = tool_buffers.setdefault(index, {"id": None, "name": None, "arguments": ""})
                    fn = get_attr(fragment, "function")
                    if get_attr(fragment, "id"):
                        entry["id"] = get_attr(fragment, "id")
                    if get_attr(fn, "name"):
                        entry["name"] = get_attr(fn, "name")
                    entry["arguments"] += get_attr(fn, "arguments", "") or ""
                finish_reason = get_attr(choice, "finish_reason")
                if finish_reason:
                    stop_reason = self.convert_stop_reason(finish_reason)

            await emit_chunk(
                on_stream_chunk,
                StreamChunk(
                    id=chunk_id,
                    provider=self.name,
                    model=request["model"],
                    delta=Message("assistant", delta_blocks),
                    buffer=Message("assistant", self._text_blocks(reasoning_buffer, content_buffer)),
                    stop_reason=stop_reason,
                    usage=usage,
                ),
            )

        blocks = self._text_blocks(reasoning_buffer, content_buffer)
        for index in sorted(tool_buffers):
            entry = tool_buffers[index]
            blocks.append(
                ToolCallBlock(
                    tool_call=ToolCall(
                        id=entry["id"],
                        fn_name=entry["name"],
                        fn_args=_parse_arguments(entry["arguments"]),
                    )
                )
            )
        if not blocks:
            raise ProviderError(f"{self.name} completion was null", details={"provider": self.name})

        return Completion(
            message=Message("assistant", blocks),
            provider=self.name,
            model=request["model"],
            usage=usage,
            stop_reason=stop_reason or ("tool_call" if tool_buffers else "unknown"),
        )

    def _text_blocks(self, reasoning: str, content: str) -> List[Any]:
        blocks: List[Any] = []
        if reasoning:
            blocks.append(ReasoningBlock(reasoning=reasoning))
        if content:
            blocks.append(TextBlock(text=content))
        return blocks


provider_registry.register_provider("openai", OpenAIProvider)


__all__ = ["TOOL_ERROR_PREFIX", "OpenAIProvider"]
