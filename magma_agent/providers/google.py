"""Google Gemini adapter built on ``google-generativeai``."""

from __future__ import annotations

import json
import os
import uuid
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - import guard exercised in runtime
    import google.generativeai as genai
except ImportError:  # pragma: no cover - covered via error path tests
    genai = None  # type: ignore[assignment]

from ..errors import ProviderError
from ..messages import (
    Completion,
    ImageBlock,
    Message,
    StreamChunk,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolResultBlock,
    Usage,
)
from ..tools import Tool
from .base import CompletionConfig, Provider, StreamCallback, emit_chunk, get_attr, provider_registry
from .openai import TOOL_ERROR_PREFIX

_STOP_REASONS = {
    "STOP": "natural",
    "RECITATION": "natural",
    "MAX_TOKENS": "max_tokens",
    "SAFETY": "content_filter",
    "LANGUAGE": "unsupported",
}


def _args_to_dict(args: Any) -> Dict[str, Any]:
    if args is None:
        return {}
    if isinstance(args, dict):
        return args
    try:
        return dict(args)
    except (TypeError, ValueError):
        return {}


class GoogleProvider(Provider):
    """Adapter for Gemini ``generate_content``.

    The client is the configured ``google.generativeai`` module (or anything
    exposing ``GenerativeModel``); a model object is built per request because
    system instructions and tools are bound at construction.
    """

    name = "google"
    package = "google-generativeai"

    def create_client(self) -> Any:
        if genai is None:
            raise self._missing_package()
        genai.configure(api_key=os.environ.get("GOOGLE_API_KEY"))
        return genai

    # --- conversion -------------------------------------------------------
    def _convert_part(self, block: Any) -> Optional[Dict[str, Any]]:
        if isinstance(block, TextBlock):
            return {"text": block.text}
        if isinstance(block, ImageBlock):
            if block.image.type == "image/url":
                raise ProviderError("Image URLs are not supported by Google", details={"provider": self.name})
            return {"inline_data": {"mime_type": block.image.type, "data": block.image.data}}
        if isinstance(block, ToolCallBlock):
            call = block.tool_call
            return {"function_call": {"name": call.fn_name, "args": call.fn_args}}
        if isinstance(block, ToolResultBlock):
            result = block.tool_result
            text = result.result if isinstance(result.result, str) else json.dumps(result.result)
            response = {"error": f"{TOOL_ERROR_PREFIX}{text}"} if result.error else {"result": result.result}
            return {"function_response": {"name": result.fn_name, "response": response}}
        return None

    def convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            parts = [p for p in (self._convert_part(b) for b in message.blocks) if p is not None]
            if not parts:
                continue
            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})
        return contents

    def convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        declarations: List[Dict[str, Any]] = []
        for tool in tools:
            declaration: Dict[str, Any] = {"name": tool.name, "description": tool.description}
            schema = tool.parameters_schema()
            if schema.get("properties"):
                declaration["parameters"] = schema
            declarations.append(declaration)
        return [{"function_declarations": declarations}]

    def convert_tool_choice(self, tool_choice: Optional[str]) -> Optional[Dict[str, Any]]:
        if tool_choice is None:
            return None
        if tool_choice == "auto":
            return {"function_calling_config": {"mode": "AUTO"}}
        if tool_choice == "required":
            return {"function_calling_config": {"mode": "ANY"}}
        return {"function_calling_config": {"mode": "ANY", "allowed_function_names": [tool_choice]}}

    def convert_config(self, config: CompletionConfig) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = dict(config.provider_config.settings or {})
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature
        if config.max_tokens is not None:
            generation_config["max_output_tokens"] = config.max_tokens

        request: Dict[str, Any] = {
            "model_name": config.model,
            "contents": self.convert_messages(config.messages),
            "generation_config": generation_config,
        }
        system_text = "\n".join(m.get_text() for m in config.messages if m.role == "system")
        if system_text:
            request["system_instruction"] = system_text
        if config.tools:
            request["tools"] = self.convert_tools(config.tools)
            tool_config = self.convert_tool_choice(config.tool_choice)
            if tool_config is not None:
                request["tool_config"] = tool_config
        return request

    def convert_stop_reason(self, stop_reason: Any) -> str:
        key = getattr(stop_reason, "name", stop_reason)
        return _STOP_REASONS.get(str(key), "unknown")

    def _convert_usage(self, metadata: Any) -> Usage:
        if metadata is None:
            return Usage()
        return Usage(
            input_tokens=int(get_attr(metadata, "prompt_token_count", 0) or 0),
            output_tokens=int(get_attr(metadata, "candidates_token_count", 0) or 0),
            cache_write_tokens=0,
            cache_read_tokens=int(get_attr(metadata, "cached_content_token_count", 0) or 0),
        )

    def _candidate_parts(self, response: Any):
        candidates = get_attr(response, "candidates") or []
        if not candidates:
            return None, []
        candidate = candidates[0]
        return candidate, get_attr(get_attr(candidate, "content"), "parts") or []

    def _convert_parts(self, parts: List[Any]) -> List[Any]:
        blocks: List[Any] = []
        for part in parts:
            fn = get_attr(part, "function_call")
            if fn is not None and get_attr(fn, "name"):
                blocks.append(
                    ToolCallBlock(
                        tool_call=ToolCall(
                            id=str(uuid.uuid4()),
                            fn_name=get_attr(fn, "name"),
                            fn_args=_args_to_dict(get_attr(fn, "args")),
                        )
                    )
                )
                continue
            text = get_attr(part, "text")
            if text:
                blocks.append(TextBlock(text=text))
        return blocks

    # --- requests ---------------------------------------------------------
    def _build_model(self, client: Any, request: Dict[str, Any]) -> Any:
        kwargs = {k: v for k, v in request.items() if k != "contents"}
        return client.GenerativeModel(**kwargs)

    async def _request(self, config: CompletionConfig, on_stream_chunk: Optional[StreamCallback]) -> Completion:
        client = self.get_client(config.provider_config)
        request = self.convert_config(config)
        model = self._build_model(client, request)
        if config.stream:
            return await self._stream(model, request, on_stream_chunk)

        response = await model.generate_content_async(request["contents"])
        candidate, parts = self._candidate_parts(response)
        blocks = self._convert_parts(parts)
        if not blocks:
            raise ProviderError("google completion was null", details={"provider": self.name})
        has_calls = any(isinstance(b, ToolCallBlock) for b in blocks)
        return Completion(
            message=Message("assistant", blocks),
            provider=self.name,
            model=config.model,
            usage=self._convert_usage(get_attr(response, "usage_metadata")),
            stop_reason="tool_call" if has_calls else self.convert_stop_reason(get_attr(candidate, "finish_reason")),
        )

    async def _stream(self, model: Any, request: Dict[str, Any], on_stream_chunk: Optional[StreamCallback]) -> Completion:
        response = await model.generate_content_async(request["contents"], stream=True)
        text_buffer = ""
        tool_blocks: List[Any] = []
        usage = Usage()
        stop_reason: Optional[str] = None
        chunk_id = str(uuid.uuid4())

        async for chunk in response:
            candidate, parts = self._candidate_parts(chunk)
            delta_blocks = self._convert_parts(parts)
            for block in delta_blocks:
                if isinstance(block, TextBlock):
                    text_buffer += block.text
                else:
                    tool_blocks.append(block)
            if get_attr(chunk, "usage_metadata") is not None:
                usage = self._convert_usage(get_attr(chunk, "usage_metadata"))
            finish_reason = get_attr(candidate, "finish_reason")
            if finish_reason:
                stop_reason = self.convert_stop_reason(finish_reason)

            buffer_blocks: List[Any] = [TextBlock(text=text_buffer)] if text_buffer else []
            await emit_chunk(
                on_stream_chunk,
                StreamChunk(
                    id=chunk_id,
                    provider=self.name,
                    model=request["model_name"],
                    delta=Message("assistant", [b for b in delta_blocks if isinstance(b, TextBlock)]),
                    buffer=Message("assistant", buffer_blocks),
                    stop_reason=stop_reason,
                    usage=usage,
                ),
            )

        blocks: List[Any] = [TextBlock(text=text_buffer)] if text_buffer else []
        blocks.extend(tool_blocks)
        if not blocks:
            raise ProviderError("google completion was null", details={"provider": self.name})
        return Completion(
            message=Message("assistant", blocks),
            provider=self.name,
            model=request["model_name"],
            usage=usage,
            stop_reason="tool_call" if tool_blocks else (stop_reason or "unknown"),
        )


provider_registry.register_provider("google", GoogleProvider)


__all__ = ["GoogleProvider"]
