"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - import guard exercised in runtime
    from anthropic import AsyncAnthropic
except ImportError:  # pragma: no cover - covered via error path tests
    AsyncAnthropic = None  # type: ignore[assignment]

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
from .base import (
    CompletionConfig,
    Provider,
    StreamCallback,
    emit_chunk,
    get_attr,
    provider_registry,
    status_code_of,
)

_STOP_REASONS = {
    "end_turn": "natural",
    "stop_sequence": "natural",
    "tool_use": "tool_call",
    "max_tokens": "max_tokens",
}

_EPHEMERAL = {"type": "ephemeral"}


def default_max_tokens(model: str) -> int:
    return 8192 if "claude-3-5" in (model or "") else 4096


class AnthropicProvider(Provider):
    """Adapter for the Anthropic Messages API."""

    name = "anthropic"
    package = "anthropic"

    def create_client(self) -> Any:
        if AsyncAnthropic is None:
            raise self._missing_package()
        return AsyncAnthropic()

    def is_rate_limit_error(self, exc: BaseException) -> bool:
        if status_code_of(exc) == 429:
            return True
        body = getattr(exc, "body", None)
        error = get_attr(body, "error") or getattr(exc, "error", None)
        return get_attr(error, "type") == "rate_limit_error"

    # --- conversion -------------------------------------------------------
    def convert_system(self, messages: List[Message]) -> Any:
        system_messages = [m for m in messages if m.role == "system"]
        if not system_messages:
            return None
        if any(b.cache for m in system_messages for b in m.blocks):
            parts = []
            for message in system_messages:
                part: Dict[str, Any] = {"type": "text", "text": message.get_text()}
                if any(b.cache for b in message.blocks):
                    part["cache_control"] = dict(_EPHEMERAL)
                parts.append(part)
            return parts
        return "\n".join(m.get_text() for m in system_messages)

    def _convert_block(self, block: Any) -> Optional[Dict[str, Any]]:
        if isinstance(block, TextBlock):
            part: Dict[str, Any] = {"type": "text", "text": block.text}
        elif isinstance(block, ImageBlock):
            if block.image.type == "image/url":
                source = {"type": "url", "url": block.image.data}
            else:
                source = {"type": "base64", "media_type": block.image.type, "data": block.image.data}
            part = {"type": "image", "source": source}
        elif isinstance(block, ToolCallBlock):
            call = block.tool_call
            part = {"type": "tool_use", "id": call.id, "name": call.fn_name, "input": call.fn_args}
        elif isinstance(block, ToolResultBlock):
            result = block.tool_result
            content = result.result if isinstance(result.result, str) else json.dumps(result.result)
            part = {
                "type": "tool_result",
                "tool_use_id": result.id,
                "content": content,
                "is_error": bool(result.error),
            }
        elif isinstance(block, ReasoningBlock):
            if block.redacted:
                part = {"type": "redacted_thinking", "data": block.reasoning}
            else:
                part = {"type": "thinking", "thinking": block.reasoning}
                if block.signature is not None:
                    part["signature"] = block.signature
        else:
            return None
        if block.cache:
            part["cache_control"] = dict(_EPHEMERAL)
        return part

    def convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            content = [p for p in (self._convert_block(b) for b in message.blocks) if p is not None]
            if not content:
                continue
            if message.role == "assistant" and converted and converted[-1]["role"] == "assistant":
                converted.append({"role": "user", "content": "Continue."})
            converted.append({"role": message.role, "content": content})
        if converted and converted[0]["role"] != "user":
            converted.insert(0, {"role": "user", "content": "begin"})
        return converted

    def convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for tool in tools:
            entry: Dict[str, Any] = {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters_schema() if tool.params else {"type": "object"},
            }
            if tool.cache:
                entry["cache_control"] = dict(_EPHEMERAL)
            out.append(entry)
        return out

    def convert_tool_choice(self, tool_choice: Optional[str]) -> Optional[Dict[str, Any]]:
        if tool_choice is None:
            return None
        if tool_choice == "auto":
            return {"type": "auto"}
        if tool_choice == "required":
            return {"type": "any"}
        return {"type": "tool", "name": tool_choice}

    def convert_config(self, config: CompletionConfig) -> Dict[str, Any]:
        request: Dict[str, Any] = dict(config.provider_config.settings or {})
        request["model"] = config.model
        request["messages"] = self.convert_messages(config.messages)
        request["max_tokens"] = config.max_tokens or default_max_tokens(config.model)
        system = self.convert_system(config.messages)
        if system:
            request["system"] = system
        if config.tools:
            request["tools"] = self.convert_tools(config.tools)
            tool_choice = self.convert_tool_choice(config.tool_choice)
            if tool_choice is not None:
                request["tool_choice"] = tool_choice
        if config.temperature is not None:
            request["temperature"] = config.temperature
        return request

    def convert_stop_reason(self, stop_reason: Any) -> str:
        return _STOP_REASONS.get(stop_reason, "unknown")

    def _convert_usage(self, usage: Any, base: Optional[Usage] = None) -> Usage:
        current = base or Usage()
        if usage is None:
            return current
        return Usage(
            input_tokens=int(get_attr(usage, "input_tokens", current.input_tokens) or 0),
            output_tokens=int(get_attr(usage, "output_tokens", current.output_tokens) or 0),
            cache_write_tokens=int(get_attr(usage, "cache_creation_input_tokens", current.cache_write_tokens) or 0),
            cache_read_tokens=int(get_attr(usage, "cache_read_input_tokens", current.cache_read_tokens) or 0),
        )

    def _convert_content(self, content: Any) -> List[Any]:
        blocks: List[Any] = []
        for raw in content or []:
            block_type = get_attr(raw, "type")
            if block_type == "text":
                blocks.append(TextBlock(text=get_attr(raw, "text", "")))
            elif block_type == "tool_use":
                blocks.append(
                    ToolCallBlock(
                        tool_call=ToolCall(
                            id=get_attr(raw, "id"),
                            fn_name=get_attr(raw, "name"),
                            fn_args=dict(get_attr(raw, "input", {}) or {}),
                        )
                    )
                )
            elif block_type == "thinking":
                blocks.append(
                    ReasoningBlock(reasoning=get_attr(raw, "thinking", ""), signature=get_attr(raw, "signature"))
                )
            elif block_type == "redacted_thinking":
                blocks.append(ReasoningBlock(reasoning=get_attr(raw, "data", ""), redacted=True))
        return blocks

    # --- requests ---------------------------------------------------------
    async def _request(self, config: CompletionConfig, on_stream_chunk: Optional[StreamCallback]) -> Completion:
        client = self.get_client(config.provider_config)
        request = self.convert_config(config)
        if config.stream:
            return await self._stream(client, request, on_stream_chunk)

        response = await client.messages.create(**request)
        blocks = self._convert_content(get_attr(response, "content"))
        if not any(isinstance(b, (TextBlock, ToolCallBlock)) for b in blocks):
            raise ProviderError("anthropic completion was null", details={"provider": self.name})
        return Completion(
            message=Message("assistant", blocks),
            provider=self.name,
            model=get_attr(response, "model", config.model),
            usage=self._convert_usage(get_attr(response, "usage")),
            stop_reason=self.convert_stop_reason(get_attr(response, "stop_reason")),
        )

    def _buffer_message(self, buffers: Dict[int, Dict[str, Any]], parse_args: bool) -> Message:
        blocks: List[Any] = []
        for index in sorted(buffers):
            entry = buffers[index]
            kind = entry["type"]
            if kind == "text" and entry["text"]:
                blocks.append(TextBlock(text=entry["text"]))
            elif kind == "thinking":
                blocks.append(ReasoningBlock(reasoning=entry["text"], signature=entry.get("signature")))
            elif kind == "redacted_thinking":
                blocks.append(ReasoningBlock(reasoning=entry["text"], redacted=True))
            elif kind == "tool_use" and parse_args:
                raw = entry["json"]
                try:
                    args = json.loads(raw) if raw else dict(entry.get("input") or {})
                except ValueError as exc:
                    raise ProviderError(f"Tool call arguments were not valid JSON: {raw!r}") from exc
                blocks.append(ToolCallBlock(tool_call=ToolCall(id=entry["id"], fn_name=entry["name"], fn_args=args)))
        return Message("assistant", blocks)

    def _apply_event(
        self,
        event: Any,
        buffers: Dict[int, Dict[str, Any]],
        state: Dict[str, Any],
    ) -> List[Any]:
        """Fold one stream event into the buffers; returns the delta blocks it carried."""
        event_type = get_attr(event, "type")
        delta_blocks: List[Any] = []
        if event_type == "message_start":
            message = get_attr(event, "message")
            state["id"] = get_attr(message, "id", state["id"])
            state["usage"] = self._convert_usage(get_attr(message, "usage"), state["usage"])
        elif event_type == "content_block_start":
            block = get_attr(event, "content_block")
            kind = get_attr(block, "type")
            buffers[get_attr(event, "index", len(buffers))] = {
                "type": kind,
                "text": get_attr(block, "text", "") or get_attr(block, "thinking", "") or get_attr(block, "data", "") or "",
                "json": "",
                "id": get_attr(block, "id"),
                "name": get_attr(block, "name"),
                "input": get_attr(block, "input"),
                "signature": get_attr(block, "signature"),
            }
        elif event_type == "content_block_delta":
            entry = buffers.get(get_attr(event, "index", 0))
            delta = get_attr(event, "delta")
            delta_type = get_attr(delta, "type")
            if entry is None:
                return delta_blocks
            if delta_type == "text_delta":
                text = get_attr(delta, "text", "")
                entry["text"] += text
                delta_blocks.append(TextBlock(text=text))
            elif delta_type == "input_json_delta":
                entry["json"] += get_attr(delta, "partial_json", "") or ""
            elif delta_type == "thinking_delta":
                thinking = get_attr(delta, "thinking", "")
                entry["text"] += thinking
                delta_blocks.append(ReasoningBlock(reasoning=thinking))
            elif delta_type == "signature_delta":
                entry["signature"] = (entry.get("signature") or "") + (get_attr(delta, "signature", "") or "")
        elif event_type == "message_delta":
            delta = get_attr(event, "delta")
            if get_attr(delta, "stop_reason"):
                state["stop_reason"] = self.convert_stop_reason(get_attr(delta, "stop_reason"))
            state["usage"] = self._convert_usage(get_attr(event, "usage"), state["usage"])
        return delta_blocks

    async def _stream(
        self,
        client: Any,
        request: Dict[str, Any],
        on_stream_chunk: Optional[StreamCallback],
    ) -> Completion:
        stream = await client.messages.create(**request, stream=True)
        buffers: Dict[int, Dict[str, Any]] = {}
        state: Dict[str, Any] = {"id": "", "usage": Usage(), "stop_reason": None}

        async for event in stream:
            delta_blocks = self._apply_event(event, buffers, state)
            await emit_chunk(
                on_stream_chunk,
                StreamChunk(
                    id=state["id"],
                    provider=self.name,
                    model=request["model"],
                    delta=Message("assistant", delta_blocks),
                    buffer=self._buffer_message(buffers, parse_args=False),
                    stop_reason=state["stop_reason"],
                    usage=state["usage"],
                ),
            )

        message = self._buffer_message(buffers, parse_args=True)
        if not message.blocks:
            raise ProviderError("anthropic completion was null", details={"provider": self.name})
        return Completion(
            message=message,
            provider=self.name,
            model=request["model"],
            usage=state["usage"],
            stop_reason=state["stop_reason"] or "unknown",
        )


provider_registry.register_provider("anthropic", AnthropicProvider)


__all__ = ["AnthropicProvider", "default_max_tokens"]
